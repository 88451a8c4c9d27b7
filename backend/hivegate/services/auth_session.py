"""
Authentication session manager.

Registration:  ANONYMOUS -> OTP_PENDING -> REGISTERED
Login:         ANONYMOUS -> CREDENTIALS_CHECKED -> AUTHENTICATED
Any failed credential or pattern check ends in REJECTED. OTP failures during
registration leave the transaction in OTP_PENDING so the caller can retry or
request a new code.
"""
import asyncio
import enum
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from hivegate.services.errors import (
    BiometricMismatch, EmailAlreadyRegistered, InvalidCredentials, InvalidTransition,
    UsernameTaken, ValidationError,
)
from hivegate.services.otp_ledger import OTP_TTL_SECONDS, normalize_email
from hivegate.services.password_hasher import hash_password_async
from hivegate.services.pattern_matcher import patterns_match
from hivegate.services.pending_registration import PendingRegistration

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
USERNAME_MIN, USERNAME_MAX = 3, 30
PASSWORD_MIN_LENGTH = 4
# bcrypt only looks at the first 72 bytes
PASSWORD_MAX_BYTES = 72
# Time allowed between a successful OTP check and the register call
REGISTRATION_WINDOW_SECONDS = OTP_TTL_SECONDS


class AuthState(str, enum.Enum):
    ANONYMOUS = "anonymous"
    OTP_PENDING = "otp_pending"
    REGISTERED = "registered"
    CREDENTIALS_CHECKED = "credentials_checked"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


TRANSITIONS = {
    AuthState.ANONYMOUS: {AuthState.OTP_PENDING, AuthState.CREDENTIALS_CHECKED, AuthState.REJECTED},
    AuthState.OTP_PENDING: {AuthState.OTP_PENDING, AuthState.REGISTERED, AuthState.REJECTED},
    AuthState.CREDENTIALS_CHECKED: {AuthState.AUTHENTICATED, AuthState.REJECTED},
    AuthState.REGISTERED: set(),
    AuthState.AUTHENTICATED: set(),
    AuthState.REJECTED: set(),
}


@dataclass
class AuthTransaction:
    subject: Optional[str] = None
    state: AuthState = AuthState.ANONYMOUS
    history: List[AuthState] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return not TRANSITIONS[self.state]

    def advance(self, new_state: AuthState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {new_state.value}")
        self.history.append(self.state)
        self.state = new_state


@dataclass
class OtpIssue:
    email: str
    expires_in_seconds: int
    delivered: bool
    transaction: AuthTransaction
    # Only populated in demo mode, when the code could not be emailed
    code: Optional[str] = None


@dataclass
class LoginResult:
    user: Any
    session_token: str
    transaction: AuthTransaction
    pattern_checked: bool = False


def require_pattern_default() -> bool:
    return os.getenv("REQUIRE_KEYSTROKE_PATTERN", "0").lower() in ("1", "true", "yes")


def demo_mode_allowed() -> bool:
    return os.getenv("ENVIRONMENT", "development").lower() != "production"


def validate_registration_input(username: str, email: str, password: Optional[str]) -> None:
    username = (username or "").strip()
    if not EMAIL_RE.match(normalize_email(email)):
        raise ValidationError("Please enter a valid email address")
    if not (USERNAME_MIN <= len(username) <= USERNAME_MAX):
        raise ValidationError(f"Username must be between {USERNAME_MIN} and {USERNAME_MAX} characters")
    # Logins treat anything with an '@' as an email address
    if "@" in username:
        raise ValidationError("Username cannot contain '@'")
    if password is not None:
        if len(password) < PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
        if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
            raise ValidationError(f"Password must be at most {PASSWORD_MAX_BYTES} bytes long")


class AuthSessionManager:
    def __init__(self, ledger, credentials, pending, mailer: Callable[..., bool],
                 session_issuer: Callable[[Any], str], require_pattern: Optional[bool] = None):
        self.ledger = ledger
        self.credentials = credentials
        self.pending = pending
        self.mailer = mailer
        self.session_issuer = session_issuer
        self.require_pattern = require_pattern_default() if require_pattern is None else require_pattern

    # Registration

    async def start_registration(self, username: str, email: str, password: Optional[str] = None,
                                 transaction: Optional[AuthTransaction] = None) -> OtpIssue:
        txn = transaction or AuthTransaction()
        email = normalize_email(email)
        username = (username or "").strip()
        txn.subject = email

        validate_registration_input(username, email, password)
        if await self.credentials.email_exists(email):
            raise EmailAlreadyRegistered()
        if await self.credentials.username_exists(username):
            raise UsernameTaken()

        password_hash = await hash_password_async(password) if password is not None else None
        await self.pending.stage(
            PendingRegistration(email=email, username=username, password_hash=password_hash),
            OTP_TTL_SECONDS,
        )
        code = await self.ledger.issue(email, username)
        txn.advance(AuthState.OTP_PENDING)

        delivered = bool(await asyncio.to_thread(self.mailer, email, code, username))
        issue = OtpIssue(email=email, expires_in_seconds=OTP_TTL_SECONDS, delivered=delivered, transaction=txn)
        if not delivered:
            if demo_mode_allowed():
                logger.info(f"[AuthSession] Demo mode: OTP for {email} is {code}")
                issue.code = code
            else:
                logger.error(f"[AuthSession] Could not deliver OTP to {email}")
        return issue

    async def verify_email(self, email: str, code: str,
                           transaction: Optional[AuthTransaction] = None) -> AuthTransaction:
        txn = transaction or AuthTransaction(state=AuthState.OTP_PENDING)
        email = normalize_email(email)
        txn.subject = email
        challenge = await self.ledger.consume_challenge(email, code)
        staged = await self.pending.mark_verified(email, REGISTRATION_WINDOW_SECONDS)
        if staged is None:
            # Challenge outlived its staging record; keep a verified marker bound to the challenge's username
            await self.pending.stage(
                PendingRegistration(email=email, username=challenge.username, verified=True),
                REGISTRATION_WINDOW_SECONDS,
            )
        txn.advance(AuthState.OTP_PENDING)
        return txn

    async def register(self, username: str, email: str, password: Optional[str] = None, enrolled_pattern=None,
                       transaction: Optional[AuthTransaction] = None):
        txn = transaction or AuthTransaction(state=AuthState.OTP_PENDING)
        email = normalize_email(email)
        username = (username or "").strip()
        txn.subject = email

        staged = await self.pending.get(email)
        if staged is None or not staged.verified:
            raise ValidationError("Email address has not been verified. Please request a verification code.")
        if staged.username != username:
            raise ValidationError("Username does not match the one used for verification")

        if password is not None:
            validate_registration_input(username, email, password)
            password_hash = None
        elif staged.password_hash:
            validate_registration_input(username, email, None)
            password_hash = staged.password_hash
        else:
            raise ValidationError("Password is required")

        user = await self.credentials.register(
            username, email, password, enrolled_pattern, password_hash=password_hash,
        )
        await self.pending.discard(email)
        await self.ledger.discard(email)
        txn.advance(AuthState.REGISTERED)
        return user

    async def confirm_registration(self, email: str, submitted_otp: str, username: str,
                                   password: Optional[str] = None, enrolled_pattern=None,
                                   transaction: Optional[AuthTransaction] = None):
        txn = transaction or AuthTransaction(state=AuthState.OTP_PENDING)
        await self.verify_email(email, submitted_otp, transaction=txn)
        return await self.register(username, email, password, enrolled_pattern, transaction=txn)

    # Login

    async def login(self, identifier: str, password: str, captured_pattern=None,
                    transaction: Optional[AuthTransaction] = None) -> LoginResult:
        txn = transaction or AuthTransaction()
        txn.subject = identifier

        if not identifier or not password or not await self.credentials.verify_password(identifier, password):
            txn.advance(AuthState.REJECTED)
            raise InvalidCredentials()
        txn.advance(AuthState.CREDENTIALS_CHECKED)

        user = await self.credentials.get_user(identifier)
        if user is None:
            txn.advance(AuthState.REJECTED)
            raise InvalidCredentials()

        enrolled = user.enrolled_pattern
        checked = False
        if enrolled is not None:
            if captured_pattern is None:
                if self.require_pattern:
                    txn.advance(AuthState.REJECTED)
                    raise BiometricMismatch("A keystroke pattern is required for this account")
                logger.info(f"[AuthSession] No captured pattern for {user.username}; secondary check skipped")
            else:
                checked = True
                if not patterns_match(enrolled, captured_pattern):
                    logger.info(f"[AuthSession] Keystroke pattern mismatch for {user.username}")
                    txn.advance(AuthState.REJECTED)
                    raise BiometricMismatch()

        await self.credentials.touch_last_login(user)
        token = self.session_issuer(user)
        txn.advance(AuthState.AUTHENTICATED)
        logger.info(f"[AuthSession] Login successful for {user.username}")
        return LoginResult(user=user, session_token=token, transaction=txn, pattern_checked=checked)
