"""Environment helpers shared by settings, database and security modules."""

import logging
import os

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(name: str) -> str:
    """Return the value of a mandatory environment variable or raise RuntimeError.
    WHY: Fail-fast during application startup when critical configuration is missing.
    """
    value = os.getenv(name)
    if not value:
        load_env_file()
        value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def load_env_file() -> None:
    """Load environment variables from a local .env file.

    WHAT:
        Copies variables from .env into os.environ without overwriting
        anything already exported.
    WHY:
        Developers keep credentials in backend/.env while production injects
        real environment variables that must win.
    """
    loaded = load_dotenv(override=False)

    if loaded:
        logger.info("Loaded local .env file (existing variables were NOT overwritten)")
    else:
        logger.debug("No local .env file found or loaded")
