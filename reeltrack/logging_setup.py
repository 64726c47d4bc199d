"""Logging configuration shared by the entry points."""

import logging
from datetime import datetime
from pathlib import Path


def setup_logging(level: str, log_dir: Path = Path("logs")) -> Path:
    """Log to stderr and to a per-day file under log_dir. Returns the file path."""
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / f"reeltrack_{datetime.now().strftime('%Y-%m-%d')}.log"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    # urllib3 logs every retry at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return log_file
