"""Logging configuration"""
import logging
import sys


def setup_logging(log_level: str = "INFO"):
    """Configure application logging"""

    formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    # Root logger; guard against duplicate handlers when the app is rebuilt
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    if not any(getattr(h, "_concierge_handler", False) for h in root_logger.handlers):
        console_handler._concierge_handler = True
        root_logger.addHandler(console_handler)

    # Third-party noise
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)

    logging.info(f"Logging configured with level: {log_level}")
