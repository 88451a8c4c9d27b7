from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi.responses import JSONResponse
from fastapi import Request

# Global limiter instance for the app
limiter = Limiter(key_func=get_remote_address, default_limits=[])

OTP_ISSUE_LIMIT = "5/minute"
OTP_VERIFY_LIMIT = "10/minute"
LOGIN_LIMIT = "10/minute"


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={
            "detail": {
                "error": "RateLimited",
                "message": "Too many requests, please slow down.",
                "limit": str(exc.detail),
            }
        },
    )
