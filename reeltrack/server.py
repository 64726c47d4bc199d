"""Web server entry point."""

import argparse
import logging
import sys

import uvicorn

from reeltrack.config import Config
from reeltrack.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def main() -> int:
    """Run the web server."""
    parser = argparse.ArgumentParser(description="ReelTrack watchlist API server")
    parser.add_argument(
        "--port",
        type=int,
        default=Config.WEB_PORT,
        help=f"Port to listen on (default: {Config.WEB_PORT})",
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Interface to bind (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--log-level",
        default=Config.LOG_LEVEL,
        help="Logging level (default from LOG_LEVEL)",
    )
    args = parser.parse_args()

    # Validate config
    errors = Config.validate()
    if errors:
        print("Configuration errors:")
        for error in errors:
            print(f"  - {error}")
        print("\nPlease check your .env file")
        return 1

    Config.ensure_directories()
    log_file = setup_logging(args.log_level, Config.LOG_DIR)

    logger.info("=" * 50)
    logger.info("ReelTrack - API server")
    logger.info("=" * 50)
    logger.info(f"Starting server on http://{args.host}:{args.port}")
    logger.info(f"Database: {Config.DATABASE_PATH}")
    logger.info(f"Logging to {log_file}")
    logger.info("=" * 50)

    uvicorn.run(
        "reeltrack.web.app:app",
        host=args.host,
        port=args.port,
        reload=False,
        log_level=args.log_level.lower(),
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
