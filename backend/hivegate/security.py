"""
Security Configuration Module

CORS, trusted hosts, security headers, double-submit CSRF and environment
validation for the HiveGate backend.
"""

import os
import json
import secrets
from typing import List
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

DEV_ORIGINS = [
    "http://localhost:8000",
    "http://127.0.0.1:8000",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]


def _split_env(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


def current_environment() -> str:
    return os.getenv("ENVIRONMENT", "development").lower()


class SecurityConfig:
    """Security configuration class"""

    def __init__(self):
        self.environment = current_environment()
        self.allowed_hosts = self._get_allowed_hosts()
        self.cors_origins = self._get_cors_origins()

    def _get_allowed_hosts(self) -> List[str]:
        """Get allowed hosts based on environment"""
        hosts = _split_env("ALLOWED_HOSTS")
        if self.environment == "production" and hosts:
            return hosts
        return ["*"]

    def _get_cors_origins(self) -> List[str]:
        """Get CORS origins based on environment"""
        origins = _split_env("CORS_ORIGINS")
        if self.environment == "production":
            return origins
        return origins + [o for o in DEV_ORIGINS if o not in origins]

    def apply_security_middleware(self, app: FastAPI) -> None:
        """Apply all security middleware to the FastAPI app."""

        # Trusted hosts
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=self.allowed_hosts,
        )

        # GZip
        app.add_middleware(GZipMiddleware, minimum_size=1000)

        # CSRF (after CORS)
        app.add_middleware(CsrfMiddleware, cors_origins=self.cors_origins)

        # Security headers
        app.add_middleware(SecurityHeadersMiddleware)

        # Finally, add CORS outermost so even error responses include CORS headers
        app.add_middleware(
            CORSMiddleware,
            allow_origins=self.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=[
                "Accept",
                "Content-Type",
                "Authorization",
                "X-CSRF-Token",
                "X-Requested-With",
                "Origin",
            ],
            expose_headers=["X-CSRF-Token"],
            max_age=86400,
        )

        logger.info(f"Security middleware applied for environment: {self.environment}")


class SecurityHeadersMiddleware:
    """Middleware to add security headers to all responses"""

    HEADERS = [
        (b"x-content-type-options", b"nosniff"),
        (b"x-frame-options", b"DENY"),
        (b"referrer-policy", b"strict-origin-when-cross-origin"),
        (b"content-security-policy", b"default-src 'self'; frame-ancestors 'none';"),
    ]

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)

        async def send_with_headers(message):
            if message.get("type") == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + self.HEADERS
            await send(message)

        return await self.app(scope, receive, send_with_headers)


class CsrfMiddleware:
    """Double-submit CSRF protection: unsafe methods need cookie 'csrf_token' and a matching 'X-CSRF-Token' header."""

    UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")

    def __init__(self, app, cors_origins: List[str] | None = None):
        self.app = app
        self.cors_origins = cors_origins or []

    @staticmethod
    async def _reject(send, message: str):
        body = json.dumps({"detail": {"error": "CsrfFailed", "message": message}}).encode()
        await send({"type": "http.response.start", "status": 403, "headers": [(b"content-type", b"application/json")]})
        await send({"type": "http.response.body", "body": body})

    async def __call__(self, scope, receive, send):
        if scope.get("type") != "http":
            return await self.app(scope, receive, send)
        method = scope.get("method", "GET").upper()
        headers = {k.decode().lower(): v.decode() for k, v in scope.get("headers", [])}
        csrf_cookie = None
        for part in headers.get("cookie", "").split(";"):
            if "=" in part:
                name, val = part.strip().split("=", 1)
                if name == "csrf_token":
                    csrf_cookie = val
                    break

        env = current_environment()
        if method in self.UNSAFE_METHODS and env != "test":
            csrf_header = headers.get("x-csrf-token")
            if env == "production":
                # Strict: header must match cookie
                if not csrf_cookie or not csrf_header or not secrets.compare_digest(csrf_cookie, csrf_header):
                    return await self._reject(send, "CSRF validation failed")
            else:
                # Development: header-only is enough when the Origin is an allowed one
                origin = headers.get("origin")
                if not csrf_header or (origin and origin not in self.cors_origins):
                    return await self._reject(send, "CSRF validation failed (dev)")
            return await self.app(scope, receive, send)

        # For safe methods, hand out a token cookie when the client has none
        if not csrf_cookie and method in ("GET", "HEAD") and scope.get("path", "") != "/csrf-token":
            new_token = secrets.token_urlsafe(32)

            async def send_with_cookie(message):
                if message.get("type") == "http.response.start":
                    cookie_parts = [f"csrf_token={new_token}", "Path=/", "SameSite=Lax"]
                    if env == "production":
                        cookie_parts.append("Secure")
                    # Not HttpOnly because client JS must read it to set X-CSRF-Token
                    message["headers"] = list(message.get("headers", [])) + [
                        (b"set-cookie", "; ".join(cookie_parts).encode())
                    ]
                await send(message)

            return await self.app(scope, receive, send_with_cookie)

        return await self.app(scope, receive, send)


def validate_environment() -> None:
    """Validate environment configuration"""
    required_vars = [
        "SESSION_SECRET",
        "DATABASE_URL",
    ]
    optional_vars = [
        "MONGODB_URI",
        "REDIS_URI",
        "EMAIL_SENDER",
        "EMAIL_PASSWORD",
    ]

    missing_vars = [var for var in required_vars if not os.getenv(var)]
    if missing_vars:
        logger.warning(f"Missing environment variables: {missing_vars}")

    missing_optional = [var for var in optional_vars if not os.getenv(var)]
    if missing_optional:
        logger.info(f"Optional services not configured, using fallbacks: {missing_optional}")

    # Validate session secret strength
    if len(os.getenv("SESSION_SECRET", "")) < 32:
        logger.warning("SESSION_SECRET should be at least 32 characters long")

    env = current_environment()
    if env not in ["development", "test", "staging", "production"]:
        logger.warning(f"Invalid ENVIRONMENT value: {env}")


# Create global security config instance
security_config = SecurityConfig()
