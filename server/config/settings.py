"""Application configuration settings."""
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import model_validator
from typing import List, Optional

# Get the server directory path
SERVER_DIR = Path(__file__).parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Supabase
    SUPABASE_URL: str
    SUPABASE_KEY: str
    SUPABASE_SCHEMA: str = "public"
    SUPABASE_TIMEOUT: int = 10

    # LLM Configuration (OpenAI-compatible chat completions endpoint)
    LLM_ENDPOINT: str = "https://openrouter.ai/api"
    LLM_API_KEY: Optional[str] = None
    LLM_MODEL: str = "openai/gpt-5-nano"
    LLM_CLASSIFIER_MODEL: str = "openai/gpt-4o-mini"
    LLM_REPLY_TEMPERATURE: float = 0.55
    LLM_APP_TITLE: str = "concierge"

    # Per-phase LLM timeouts (seconds)
    LLM_INTENT_TIMEOUT: int = 8
    LLM_RESCUE_TIMEOUT: int = 4
    LLM_RESOLVER_TIMEOUT: int = 6
    LLM_RESPONSE_TIMEOUT: int = 30

    # Dialogue orchestration
    MAX_TOOL_ROUNDS: int = 3
    CONVERSATION_HISTORY_LIMIT: int = 8
    CLARIFIER_LOOKBACK_TURNS: int = 6
    THREAD_SUGGESTION_LIMIT: int = 8

    # Duplicate detection / suggestion resolution policy constants
    DUPLICATE_ASK_THRESHOLD: float = 0.58
    DUPLICATE_UPDATE_THRESHOLD: float = 0.72
    DUPLICATE_MARGIN: float = 0.12
    DUPLICATE_WINDOW_HOURS: int = 6
    DUPLICATE_TOLERANCE_MINUTES: int = 90
    SUGGESTION_CONFIDENCE_THRESHOLD: float = 0.55
    SUGGESTION_WRITE_CONFIDENCE: float = 0.62
    AUTOPILOT_CONFIDENCE_THRESHOLD: float = 0.7

    # Calendar resolution
    EVENT_MATCH_THRESHOLD: float = 0.5
    EVENT_MIN_SCORE: float = 0.2
    CALENDAR_NAME_MATCH_THRESHOLD: float = 0.82

    # Google Calendar
    GOOGLE_CALENDAR_ID: Optional[str] = None
    GOOGLE_SERVICE_ACCOUNT_FILE: str = "./integrations/google_calendar/service_account.json"
    MANAGED_CALENDAR_NAME: str = "Concierge Managed Calendar"
    DEFAULT_TIMEZONE: str = "America/Toronto"

    # Research loop
    RESEARCH_MAX_FETCHES: int = 7
    RESEARCH_FETCH_TIMEOUT: int = 8

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # CORS: explicit list of allowed origins
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]

    # Rate limiting
    RATE_LIMIT_PER_MINUTE: int = 60

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "Settings":
        if self.DUPLICATE_ASK_THRESHOLD > self.DUPLICATE_UPDATE_THRESHOLD:
            raise ValueError(
                "DUPLICATE_ASK_THRESHOLD must not exceed DUPLICATE_UPDATE_THRESHOLD. "
                "Plausible duplicates would otherwise be updated without asking."
            )
        if self.MAX_TOOL_ROUNDS < 0:
            raise ValueError("MAX_TOOL_ROUNDS must be zero or positive")
        return self

    class Config:
        env_file = str(SERVER_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Global settings instance
settings = Settings()
