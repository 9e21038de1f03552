"""Environment variable loading utilities."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def load_env(env_file: str | Path | None = None) -> bool:
    """Load environment variables from a .env file.

    Searches the explicit path first, then the SHEET_AGENT_ENV_FILE variable,
    then falls back to standard dotenv discovery from the working directory.
    Variables already set in the process environment are never overridden.

    Args:
        env_file: Optional explicit path to a .env file

    Returns:
        True if a .env file was found and loaded
    """
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")

    candidates = [env_file, os.getenv("SHEET_AGENT_ENV_FILE")]
    for candidate in candidates:
        if not candidate:
            continue
        path = Path(candidate).expanduser()
        if path.exists():
            logger.info(f"Loaded environment from: {path}")
            return load_dotenv(path)
        logger.warning(f"No .env file at {path}")

    return load_dotenv()
