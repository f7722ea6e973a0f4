"""Startup configuration lookups for the billing API.

DATABASE_URL and JWT_SECRET are read at import time by database.py and
security.py. Deployments export them; local runs keep them in backend/.env,
which is only consulted when the process environment lacks the variable.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def require_env(name: str, hint: Optional[str] = None) -> str:
    """Value of `name`, falling back to backend/.env, else RuntimeError.

    Exported variables always win over the .env file.
    """
    value = os.getenv(name)
    if not value and load_dotenv(override=False):
        logger.info(f"[CONFIG] {name} not exported, loaded backend/.env")
        value = os.getenv(name)
    if not value:
        raise RuntimeError(f"{name} is not set. {hint or 'Export it or add it to backend/.env.'}")
    return value
