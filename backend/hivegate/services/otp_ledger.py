"""
OTP ledger: issues, verifies and consumes one-time passcodes per email.

Policy:
  - at most one live challenge per email; a new issue supersedes older ones
  - a challenge lives for 5 minutes and allows 3 wrong submissions
  - expiry and exhaustion are terminal: every challenge for the email is purged
    and a fresh issue is required
"""
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from hivegate.services.errors import OtpAttemptsExhausted, OtpExpired, OtpMismatch, OtpNotFound
from hivegate.services.otp_store import OTP_MAX_ATTEMPTS, OtpChallenge

logger = logging.getLogger(__name__)

OTP_TTL_SECONDS = 300
OTP_CODE_MIN = 100000
OTP_CODE_MAX = 999999


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def generate_code() -> str:
    return str(OTP_CODE_MIN + secrets.randbelow(OTP_CODE_MAX - OTP_CODE_MIN + 1))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpLedger:
    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None,
                 ttl_seconds: int = OTP_TTL_SECONDS):
        self.store = store
        self.clock = clock or _utcnow
        self.ttl = timedelta(seconds=ttl_seconds)

    async def issue(self, email: str, username: str) -> str:
        email = normalize_email(email)
        now = self.clock()
        challenge = OtpChallenge(
            email=email,
            username=(username or "").strip(),
            code=generate_code(),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        await self.store.replace(challenge)
        logger.info(f"[OtpLedger] Issued challenge for {email}, expires {challenge.expires_at.isoformat()}")
        return challenge.code

    async def verify(self, email: str, submitted_code: str) -> bool:
        await self.consume_challenge(email, submitted_code)
        return True

    async def consume_challenge(self, email: str, submitted_code: str) -> OtpChallenge:
        """Consume the live challenge for email and return it; raises on every failure."""
        email = normalize_email(email)
        submitted = (submitted_code or "").strip()

        challenge = await self.store.latest_live(email)
        if challenge is None:
            raise OtpNotFound()

        if self.clock() > challenge.expires_at:
            await self.store.purge(email)
            logger.info(f"[OtpLedger] Challenge for {email} expired")
            raise OtpExpired()

        if challenge.attempts >= OTP_MAX_ATTEMPTS:
            await self.store.purge(email)
            raise OtpAttemptsExhausted()

        if hmac.compare_digest(challenge.code.encode(), submitted.encode()):
            consumed = await self.store.consume(challenge.id, submitted)
            if consumed is None:
                await self._raise_for_lost_race(email, challenge.id)
            logger.info(f"[OtpLedger] Challenge for {email} verified")
            return consumed

        updated = await self.store.record_failure(challenge.id)
        if updated is None:
            await self._raise_for_lost_race(email, challenge.id)
        logger.info(f"[OtpLedger] Wrong code for {email}, {updated.remaining_attempts} attempts remaining")
        raise OtpMismatch(updated.remaining_attempts)

    async def _raise_for_lost_race(self, email: str, challenge_id) -> None:
        # A concurrent verify changed the challenge between our read and our update
        current = await self.store.get(challenge_id)
        if current is None or current.consumed:
            raise OtpNotFound()
        await self.store.purge(email)
        raise OtpAttemptsExhausted()

    async def discard(self, email: str) -> int:
        return await self.store.purge(normalize_email(email))
