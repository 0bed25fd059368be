import logging
import os

logger = logging.getLogger(__name__)


def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail-fast during application startup when critical configuration is missing.
    """
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> None:
    """Load environment variables from .env file if not already set.

    WHAT:
        Loads variables from a local .env file into os.environ.
        Does NOT overwrite existing environment variables.
    WHY:
        Lets developers keep DATABASE_URL / TOKEN_ENCRYPTION_KEY in backend/.env
        without risking overwriting production variables.
    """
    from dotenv import load_dotenv

    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
