import logging
from typing import Optional

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    """Client settings"""
    
    # API
    API_BASE_URL: str = "http://localhost:8000"
    API_PREFIX: str = "/api/v1"
    REQUEST_TIMEOUT_SECONDS: float = 15.0
    DEBUG: bool = False
    
    # Sync
    REFRESH_INTERVAL_SECONDS: float = 10.0  # 0 disables polling
    PAGE_LIMIT: int = 50
    MAX_MESSAGE_PAGES: int = 20
    
    # Messages
    MAX_MESSAGE_LENGTH: int = 5000
    PENDING_MATCH_WINDOW_SECONDS: float = 60.0
    
    # Logging
    LOG_LEVEL: str = "INFO"
    
    class Config:
        env_file = ".env"
        case_sensitive = True


def configure_logging(level: Optional[str] = None) -> None:
    """Apply LOG_LEVEL (or DEBUG when DEBUG=true) to the package logger."""
    if level is None:
        level = "DEBUG" if settings.DEBUG else settings.LOG_LEVEL
    logging.basicConfig(format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("wellmom_chat").setLevel(level.upper())


# Create settings instance
settings = Settings()
