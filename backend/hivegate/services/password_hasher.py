import asyncio
import logging
import os

import bcrypt

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))


def hash_password(password: str, rounds: int | None = None) -> str:
    """Hash password using bcrypt"""
    salt = bcrypt.gensalt(rounds=rounds or BCRYPT_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def check_password(password: str, hashed: str | None) -> bool:
    """Verify password against hash; a missing or malformed hash never matches"""
    if not hashed or password is None:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


async def hash_password_async(password: str) -> str:
    return await asyncio.to_thread(hash_password, password)


async def check_password_async(password: str, hashed: str | None) -> bool:
    return await asyncio.to_thread(check_password, password, hashed)
