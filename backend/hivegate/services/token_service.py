import os
import logging
from datetime import datetime, timedelta, timezone
from jose import jwt, JWTError
from dotenv import load_dotenv

load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), '../../.env'))

logger = logging.getLogger(__name__)

SESSION_SECRET = os.getenv("SESSION_SECRET", "fallback-secret-key-for-development-only")
SESSION_ALGORITHM = "HS256"
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 3600)))

# Warn if using fallback secret
if SESSION_SECRET == "fallback-secret-key-for-development-only":
    logger.warning("Using fallback session secret. Set SESSION_SECRET environment variable for production.")


def create_session_token(data: dict, expires_in_seconds: int = SESSION_TTL_SECONDS) -> str:
    """Signed session token carrying the principal's claims."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"iat": now, "exp": now + timedelta(seconds=expires_in_seconds), "scope": "session"})
    return jwt.encode(to_encode, SESSION_SECRET, algorithm=SESSION_ALGORITHM)


def establish_session(user) -> str:
    """Session issuer used by the auth core once a login has been accepted."""
    return create_session_token({
        "sub": str(user.id),
        "user_id": user.id,
        "username": user.username,
        "role": user.role,
    })


def verify_session_token(token: str):
    try:
        payload = jwt.decode(token, SESSION_SECRET, algorithms=[SESSION_ALGORITHM])
    except JWTError as e:
        logger.info(f"[TokenService] Invalid or expired token: {e}")
        return None
    if payload.get("scope") != "session":
        return None
    return payload
