"""FastAPI application setup."""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import time

from api.rate_limit import SlidingWindowRateLimiter
from api.routes.chat import router as chat_router
from api.routes.health import router as health_router
from config.logging_config import setup_logging
from config.settings import settings
from database.client import init_supabase
from core.dependencies import init_dependencies, shutdown_dependencies

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect storage and wire the agent graph; close HTTP clients on shutdown."""
    logger.info("Initializing database connection...")
    init_supabase()
    init_dependencies()
    logger.info("Application started")
    yield
    await shutdown_dependencies()
    logger.info("Application shut down")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Concierge API",
        description="Dialogue orchestration for a personal planning concierge",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Never combine allow_credentials=True with allow_origins=["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = SlidingWindowRateLimiter(settings.RATE_LIMIT_PER_MINUTE)

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        if request.url.path.startswith("/health"):
            return await call_next(request)

        client_host = request.client.host if request.client else None
        if not await limiter.allow(client_host):
            logger.warning(f"Rate limit hit on {request.url.path}")
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded. Try again later."},
            )

        started = time.time()
        response = await call_next(request)
        elapsed_ms = int((time.time() - started) * 1000)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)")
        return response

    app.include_router(health_router, tags=["Health"])
    app.include_router(chat_router, prefix="/chat", tags=["Chat"])

    logger.info("FastAPI application created")
    return app
