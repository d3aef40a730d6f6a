from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://localhost:5432/marketing_segments"

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v: str) -> str:
        """Convert postgresql:// to postgresql+asyncpg:// for async support."""
        if v and v.startswith('postgresql://'):
            return v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        return v

    # Job queue (flow triggers)
    REDIS_URL: str = "redis://localhost:6379/0"
    FLOW_TRIGGER_QUEUE: str = "flow-trigger"

    # Segment evaluation
    EVENT_WINDOW_SIZE: int = 1000
    RECONCILE_WORKER_CONCURRENCY: int = 10
    RECONCILE_QUEUE_MAXSIZE: int = 10000

    # Scheduled full recalculation
    SEGMENT_REFRESH_ENABLED: bool = True
    SEGMENT_REFRESH_INTERVAL_MINUTES: int = 60

    # Shared secret for the hook endpoints (disabled when unset)
    INTERNAL_API_KEY: str | None = None

    # Error tracking (disabled when unset)
    SENTRY_DSN: str | None = None

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @field_validator('EVENT_WINDOW_SIZE', 'RECONCILE_WORKER_CONCURRENCY', 'SEGMENT_REFRESH_INTERVAL_MINUTES')
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode='after')
    def harden_production(self) -> "Settings":
        """Debug output is never enabled outside development."""
        if self.is_production:
            self.DEBUG = False
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() in ("production", "staging")

    @property
    def DOCS_ENABLED(self) -> bool:
        return not self.is_production

    @property
    def sqlalchemy_echo(self) -> bool:
        # SECURITY: statement logging can leak parameters
        return self.DEBUG and not self.is_production

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
