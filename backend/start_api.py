#!/usr/bin/env python3
"""
shopsync API Startup Script

Starts the FastAPI server for the TikTok Shop sync engine.
"""

import logging
import sys
from pathlib import Path

import uvicorn

logger = logging.getLogger(__name__)


def main():
    """Start the shopsync API server."""
    logging.basicConfig(level=logging.INFO)
    logger.info("Starting shopsync API server")
    logger.info("Swagger UI: http://localhost:8000/docs")

    if not Path(".env").exists():
        logger.warning("No .env file found; set DATABASE_URL, TOKEN_ENCRYPTION_KEY, "
                       "TIKTOK_SHOP_APP_KEY and TIKTOK_SHOP_APP_SECRET")

    try:
        uvicorn.run(
            "shopsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["shopsync"],
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Shutting down shopsync API server")
    except Exception as e:
        logger.error("Error starting server: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
