"""Configuration loading from .env file."""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env file
load_dotenv()


class Config:
    """Application configuration."""

    # TMDB
    TMDB_API_KEY: str = os.getenv("TMDB_API_KEY", "")
    WATCH_REGION: str = os.getenv("WATCH_REGION", "US")
    REQUEST_TIMEOUT: float = float(os.getenv("REQUEST_TIMEOUT", "15"))
    REQUEST_RETRIES: int = int(os.getenv("REQUEST_RETRIES", "1"))

    # Browse
    MIN_VOTE_COUNT: int = int(os.getenv("MIN_VOTE_COUNT", "100"))
    TOP_RATED_MIN_VOTES: int = int(os.getenv("TOP_RATED_MIN_VOTES", "500"))
    ACTIVITY_FEED_LIMIT: int = int(os.getenv("ACTIVITY_FEED_LIMIT", "10"))

    # Storage
    DATABASE_PATH: Path = Path(os.getenv("DATABASE_PATH", "data/reeltrack.db"))
    LOG_DIR: Path = Path(os.getenv("LOG_DIR", "logs"))
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Web interface
    WEB_PORT: int = int(os.getenv("WEB_PORT", "19876"))

    @classmethod
    def validate(cls) -> list[str]:
        """Validate required configuration. Returns list of errors."""
        errors = []

        if not cls.TMDB_API_KEY:
            errors.append("TMDB_API_KEY is required for browsing content")

        if cls.REQUEST_TIMEOUT <= 0:
            errors.append("REQUEST_TIMEOUT must be positive")

        if cls.REQUEST_RETRIES < 0:
            errors.append("REQUEST_RETRIES cannot be negative")

        return errors

    @classmethod
    def ensure_directories(cls) -> None:
        """Create data and logs directories if they don't exist."""
        cls.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
        cls.LOG_DIR.mkdir(parents=True, exist_ok=True)
