"""Application configuration using Pydantic Settings."""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Application
    APP_NAME: str = "Skill Library Answer Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./data/skillbase.db"

    # Redis: leave empty to run without a queue or cache
    REDIS_URL: str = ""
    QUEUE_ENABLED: bool = True
    CACHE_ENABLED: bool = True
    CACHE_TTL_SECONDS: int = 300

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Celery
    CELERY_CONCURRENCY: int = 2
    BULK_QUEUE_NAME: str = "bulk-operations"

    # Batch processing
    BATCH_SIZE_MIN: int = 5
    BATCH_SIZE_MAX: int = 50
    BATCH_SIZE_DEFAULT: int = 25
    BATCH_CONCURRENCY: int = 2          # chunks in flight per run (1-4)
    BACKGROUND_WORKERS: int = 2         # threads for the sync-background path

    # Skill selection
    SKILL_MIN_SCORE: float = 0.1
    SKILL_MAX_COUNT: int = 10
    SKILL_QUESTION_SAMPLE: int = 200
    LIBRARIES: str = "knowledge,it,gtm,talent,customers"

    # Review workflow
    REVIEWER_USER_IDS: str = ""

    # Answer generation
    LLM_PROVIDER: str = "anthropic"     # anthropic | openai | ollama
    LLM_API_KEY: str = ""
    OLLAMA_URL: str = "http://host.docker.internal:11434"
    MODEL_FAST: str = "claude-3-5-haiku-20241022"
    MODEL_BALANCED: str = "claude-3-5-sonnet-20241022"
    MODEL_QUALITY: str = "claude-3-5-sonnet-20241022"
    LLM_MAX_TOKENS: int = 16384
    LLM_TIMEOUT_SECONDS: float = 120.0

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def library_ids(self) -> list[str]:
        return [lib.strip() for lib in self.LIBRARIES.split(",") if lib.strip()]

    @property
    def reviewer_ids(self) -> set[str]:
        return {u.strip() for u in self.REVIEWER_USER_IDS.split(",") if u.strip()}

    @property
    def queue_configured(self) -> bool:
        return self.QUEUE_ENABLED and bool(self.REDIS_URL)

    def model_for_speed(self, speed: str) -> str:
        return {
            "fast": self.MODEL_FAST,
            "balanced": self.MODEL_BALANCED,
        }.get(speed, self.MODEL_QUALITY)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
