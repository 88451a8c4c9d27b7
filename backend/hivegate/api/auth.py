import os
import logging
from datetime import datetime, timezone
from typing import Literal, Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.exc import SQLAlchemyError

from hivegate import database
from hivegate.database import get_db
from hivegate.middlewares.rbac import SESSION_COOKIE, get_current_claims, get_optional_claims
from hivegate.schemas.auth import (
    SendOtpRequest, SendOtpResponse, VerifyOtpRequest, VerifyOtpResponse, RegisterRequest, RegisterResponse,
    LoginRequest, LoginResponse, SessionStatusResponse,
)
from hivegate.services import email_service
from hivegate.services.audit_log_service import log_login_attempt, log_registration
from hivegate.services.auth_session import AuthSessionManager
from hivegate.services.credential_store import CredentialStore
from hivegate.services.errors import AuthError, StoreUnavailable
from hivegate.services.keystroke import extract_pattern
from hivegate.services.otp_ledger import OtpLedger
from hivegate.services.rate_limit import limiter, OTP_ISSUE_LIMIT, OTP_VERIFY_LIMIT, LOGIN_LIMIT
from hivegate.services.token_service import SESSION_TTL_SECONDS, establish_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

# Cookie policy: default to Lax in development (same-site localhost), None in production
ENV = os.environ.get("ENVIRONMENT", "development").lower()
COOKIE_SAMESITE_DEFAULT = "none" if ENV == "production" else "lax"

SamesiteType = Literal['lax', 'strict', 'none']


def _cookie_samesite() -> SamesiteType:
    v = os.environ.get("COOKIE_SAMESITE", COOKIE_SAMESITE_DEFAULT)
    v_lower = (v or "").lower()
    return cast(SamesiteType, v_lower if v_lower in ("lax", "strict", "none") else COOKIE_SAMESITE_DEFAULT)


def _cookie_secure() -> bool:
    return bool(int(os.environ.get("COOKIE_SECURE", "1" if ENV == "production" else "0")))


def get_auth_manager(db=Depends(get_db)) -> AuthSessionManager:
    if db is None:
        raise StoreUnavailable("User database is not configured")
    return AuthSessionManager(
        ledger=OtpLedger(database.get_otp_store()),
        credentials=CredentialStore(db),
        pending=database.get_pending_registrations(),
        mailer=email_service.send_otp_email,
        session_issuer=establish_session,
    )


def _submitted_pattern(data):
    """A reduced pattern wins over raw events; neither means no pattern."""
    if data.keystrokePattern is not None:
        return data.keystrokePattern
    if data.keystrokeEvents:
        return extract_pattern(data.keystrokeEvents, captured_at=datetime.now(timezone.utc))
    return None


async def _audit(coro_fn, *args, **kwargs):
    # Audit trail is best-effort; it never decides the outcome of an auth call
    try:
        await coro_fn(*args, **kwargs)
    except SQLAlchemyError as e:
        logger.warning(f"[Audit] Could not write audit record: {e}")


@router.post("/send-otp", response_model=SendOtpResponse)
@limiter.limit(OTP_ISSUE_LIMIT)
async def send_otp(request: Request, data: SendOtpRequest, manager: AuthSessionManager = Depends(get_auth_manager)):
    issue = await manager.start_registration(data.username, data.email, data.password)
    if issue.delivered:
        return SendOtpResponse(issued=True, expiresInSeconds=issue.expires_in_seconds)
    return SendOtpResponse(
        issued=True,
        expiresInSeconds=issue.expires_in_seconds,
        message="Email delivery is not configured; use the code shown",
        demoOtp=issue.code,
    )


@router.post("/verify-otp", response_model=VerifyOtpResponse)
@limiter.limit(OTP_VERIFY_LIMIT)
async def verify_otp(request: Request, data: VerifyOtpRequest, manager: AuthSessionManager = Depends(get_auth_manager)):
    await manager.verify_email(data.email, data.code)
    return VerifyOtpResponse(verified=True)


@router.post("/auth/register", response_model=RegisterResponse)
async def register(request: Request, data: RegisterRequest, db=Depends(get_db),
                   manager: AuthSessionManager = Depends(get_auth_manager)):
    user = await manager.register(data.username, data.email, data.password, _submitted_pattern(data))
    await _audit(log_registration, db, user_id=user.id, email=user.email)
    return RegisterResponse(userId=user.id, username=user.username, email=user.email, role=user.role)


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(LOGIN_LIMIT)
async def login(request: Request, data: LoginRequest, response: Response, db=Depends(get_db),
                manager: AuthSessionManager = Depends(get_auth_manager)):
    try:
        result = await manager.login(data.identifier, data.password, _submitted_pattern(data))
    except AuthError as e:
        if not isinstance(e, StoreUnavailable):
            await _audit(log_login_attempt, db, user_id=None, identifier=data.identifier,
                         status="failure", details=e.kind)
        raise

    user = result.user
    response.set_cookie(
        key=SESSION_COOKIE,
        value=result.session_token,
        httponly=True,
        secure=_cookie_secure(),
        samesite=_cookie_samesite(),
        max_age=SESSION_TTL_SECONDS,
        path="/"
    )
    await _audit(log_login_attempt, db, user_id=user.id, identifier=data.identifier, status="success",
                 details="pattern_checked" if result.pattern_checked else None)
    return LoginResponse(userId=user.id, username=user.username, role=user.role, sessionEstablished=True)


@router.post("/auth/logout")
async def logout(response: Response):
    response.delete_cookie(SESSION_COOKIE, path="/")
    return {"success": True, "message": "Logged out successfully"}


@router.get("/auth/status", response_model=SessionStatusResponse)
async def session_status(claims: Optional[dict] = Depends(get_optional_claims)):
    if not claims:
        return SessionStatusResponse(authenticated=False)
    return SessionStatusResponse(authenticated=True, user={
        "id": claims.get("user_id"),
        "username": claims.get("username"),
        "role": claims.get("role", "user"),
    })


@router.get("/auth/me")
async def me(claims: dict = Depends(get_current_claims), db=Depends(get_db)):
    if db is None:
        raise StoreUnavailable("User database is not configured")
    user = await CredentialStore(db).get_by_id(int(claims["user_id"]))
    if user is None:
        raise HTTPException(status_code=404, detail="User not found.")
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "emailVerified": user.email_verified,
        "hasKeystrokePattern": user.keystroke_pattern is not None,
        "lastLogin": user.last_login.isoformat() if user.last_login else None,
    }
