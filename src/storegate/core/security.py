"""
Password hashing and clock helpers.

Uses bcrypt directly (passlib is not compatible with bcrypt 5.x).
Hash checks run in a worker thread so the event loop is never blocked
by the key-derivation cost.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import bcrypt

logger = logging.getLogger(__name__)

# bcrypt only considers the first 72 bytes of input
_BCRYPT_MAX_BYTES = 72


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns of every model."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalize_password(password: str) -> bytes:
    return (password or "").encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 12) -> str:
    """
    Hash a password with bcrypt.

    Args:
        password: Plain-text password
        rounds: bcrypt cost factor

    Returns:
        Encoded bcrypt hash
    """
    hashed = bcrypt.hashpw(_normalize_password(password), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Check a password against a stored bcrypt hash."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(_normalize_password(password), password_hash.encode("utf-8"))
    except ValueError as e:
        # Malformed hash in storage
        logger.error(f"Stored password hash could not be parsed: {e}")
        return False


async def verify_password_async(password: str, password_hash: Optional[str]) -> bool:
    """verify_password off the event loop."""
    return await asyncio.to_thread(verify_password, password, password_hash)
