"""Security utilities for password hashing and JWTs.

WHAT:
    Centralizes password hashing, generated credentials for accounts created
    from payments, and JWT helpers.

WHY:
    - Payment-first signups and affiliate purchases create accounts without a
      user-chosen password, so we generate one and store only its hash.
    - Affiliate links may carry a signed token embedding the workspace to clone.
    - Password-setup emails link to a short-lived signed token.
"""

import logging
import os
import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt, JWTError
from passlib.hash import bcrypt

from .utils.env import require_env


ALGORITHM = "HS256"
JWT_SECRET = require_env("JWT_SECRET")
PASSWORD_SETUP_EXPIRES_MINUTES = int(os.getenv("PASSWORD_SETUP_EXPIRES_MINUTES", "4320"))

logger = logging.getLogger(__name__)


TEMP_PASSWORD_LENGTH = 12
_TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def get_password_hash(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a plaintext password against a bcrypt hash."""
    return bcrypt.verify(password, password_hash)


def generate_temporary_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    """Generate a random temporary password.

    Always contains at least one lowercase letter, one uppercase letter and
    one digit so it passes the login form's password rules.
    """
    while True:
        candidate = "".join(secrets.choice(_TEMP_PASSWORD_ALPHABET) for _ in range(length))
        if (
            any(c.islower() for c in candidate)
            and any(c.isupper() for c in candidate)
            and any(c.isdigit() for c in candidate)
        ):
            return candidate


def username_base(first_name: Optional[str], email: str) -> str:
    """Derive a lowercase alphanumeric username stem from a name or email."""
    source = first_name or email.split("@", 1)[0]
    stem = re.sub(r"[^a-z0-9]", "", source.lower())
    return stem or "user"


def generate_username_candidate(first_name: Optional[str], email: str) -> str:
    """Username stem plus a random 4-digit suffix (uniqueness is checked by the caller)."""
    return f"{username_base(first_name, email)}{secrets.randbelow(9000) + 1000}"


def create_password_setup_token(email: str, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT that lets a provisioned account choose its password."""
    if expires_minutes is None:
        expires_minutes = PASSWORD_SETUP_EXPIRES_MINUTES
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {
        "sub": email,
        "purpose": "password_setup",
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
    }
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])


def decode_affiliate_workspace_id(token: str) -> Optional[str]:
    """Extract the `workspaceId` claim from an affiliate-link token.

    Returns None when the token is invalid or carries no workspace.
    """
    try:
        payload = decode_token(token)
    except JWTError as e:
        logger.warning(f"[AFFILIATE_TOKEN] Could not decode affiliate link token: {e}")
        return None

    workspace_id = payload.get("workspaceId")
    return str(workspace_id) if workspace_id else None
