import os
import secrets
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.exceptions import HTTPException
from dotenv import load_dotenv
from slowapi.middleware import SlowAPIMiddleware
from slowapi.errors import RateLimitExceeded

from hivegate import database
from hivegate.api import auth
from hivegate.security import logger, security_config, validate_environment
from hivegate.services.errors import AuthError, StoreUnavailable
from hivegate.services.rate_limit import limiter, rate_limit_exceeded_handler

# Load environment variables and validate
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), '../.env'))
validate_environment()

app = FastAPI(title="HiveGate Auth Backend", version="0.1.0")


# JSON error responses
@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    if exc.status_code >= 500:
        logger.error(f"[{exc.kind}] {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail if exc.detail else str(exc)})


# Security and rate limiting
security_config.apply_security_middleware(app)
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.get("/health")
def health_check():
    return {
        "status": "ok",
        "database": "configured" if database.AsyncSessionLocal is not None else "not configured",
        "otp_store": "mongodb" if database.mongo_db is not None else "memory",
        "pending_store": "redis" if database.redis_client is not None else "memory",
    }


@app.get("/csrf-token")
def get_csrf_token():
    """Issue a CSRF token and return it with Set-Cookie and X-CSRF-Token on the SAME response."""
    token = secrets.token_urlsafe(32)
    cookie_kwargs = {"samesite": "lax", "path": "/"}
    if os.getenv("ENVIRONMENT", "development").lower() == "production":
        cookie_kwargs["secure"] = True
    resp = JSONResponse({"csrf": token})
    resp.set_cookie("csrf_token", token, **cookie_kwargs)
    resp.headers["X-CSRF-Token"] = token
    return resp


@app.get("/favicon.ico")
def favicon():
    return Response(content=b"", media_type="image/x-icon")


# Routers
app.include_router(auth.router, prefix="/api")


@app.on_event("startup")
async def on_startup():
    try:
        await database.ensure_mongo_indexes()
    except StoreUnavailable as e:
        logger.error(f"[Startup] Mongo index init failed: {e}")
    if os.getenv("AUTO_CREATE_TABLES", "0") == "1":
        await database.create_tables()
