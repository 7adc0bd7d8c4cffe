from pydantic_settings import BaseSettings
from pydantic import validator


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Grade Sync Worker"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./gradesync.db"
    DATABASE_ECHO: bool = False

    # Queue settings
    REDIS_URL: str = "redis://localhost:6379"
    GRADE_SYNC_QUEUE_NAME: str = "gradebook-gradesync"
    WORKER_POLL_TIMEOUT_SECONDS: int = 5

    # Base64 AES-256 key used for stored gradebook connection credentials
    ENCRYPTION_KEY: str = ""

    # Roster source (education Graph) application credentials
    ROSTER_CLIENT_ID: str = ""
    ROSTER_CLIENT_SECRET: str = ""
    ROSTER_AUTHORITY_URL: str = "https://login.microsoftonline.com"
    ROSTER_GRAPH_SCOPE: str = "https://graph.microsoft.com/.default"
    ROSTER_EDU_BASE_URL: str = "https://graph.microsoft.com/v1.0/education"
    ROSTER_EDU_BETA_URL: str = "https://graph.microsoft.com/beta/education"

    # Gradebook (OneRoster) settings
    GRADEBOOK_PAGE_SIZE: int = 100
    GRADEBOOK_TOKEN_REFRESH_MARGIN_MINUTES: int = 5
    GRADEBOOK_VENDOR_AUTH_HEADER: str = ""

    @validator("LOG_LEVEL")
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("LOG_LEVEL must be a standard logging level name")
        return level

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("GRADEBOOK_PAGE_SIZE")
    def validate_page_size(cls, v):
        if v < 1:
            raise ValueError("GRADEBOOK_PAGE_SIZE must be positive")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
