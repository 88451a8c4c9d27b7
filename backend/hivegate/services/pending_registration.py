"""
Server-side staging of registrations awaiting OTP confirmation.

The password is hashed and staged when the OTP is issued, so the client does
not have to hold it across the email round-trip. Records expire with the OTP;
verifying the OTP restarts the expiry so the caller has a full window to register.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from typing import Dict, Optional, Tuple

from redis.exceptions import RedisError

from hivegate.services.errors import StoreUnavailable

logger = logging.getLogger(__name__)

KEY_PREFIX = "pending_registration:"


@dataclass
class PendingRegistration:
    email: str
    username: str
    password_hash: Optional[str] = None
    verified: bool = False


class RedisPendingRegistrations:
    def __init__(self, client):
        self.client = client

    async def stage(self, record: PendingRegistration, ttl_seconds: int) -> None:
        try:
            await self.client.setex(KEY_PREFIX + record.email, ttl_seconds, json.dumps(asdict(record)))
        except RedisError as e:
            logger.error(f"[PendingRegistrations] stage failed: {e}")
            raise StoreUnavailable() from e

    async def get(self, email: str) -> Optional[PendingRegistration]:
        try:
            raw = await self.client.get(KEY_PREFIX + email)
        except RedisError as e:
            logger.error(f"[PendingRegistrations] get failed: {e}")
            raise StoreUnavailable() from e
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return PendingRegistration(**json.loads(raw))

    async def mark_verified(self, email: str, ttl_seconds: int) -> Optional[PendingRegistration]:
        """Flag the record verified and restart its expiry, giving a fresh window to register."""
        record = await self.get(email)
        if record is None:
            return None
        record.verified = True
        try:
            await self.client.setex(KEY_PREFIX + email, ttl_seconds, json.dumps(asdict(record)))
        except RedisError as e:
            logger.error(f"[PendingRegistrations] mark_verified failed: {e}")
            raise StoreUnavailable() from e
        return record

    async def discard(self, email: str) -> None:
        try:
            await self.client.delete(KEY_PREFIX + email)
        except RedisError as e:
            logger.error(f"[PendingRegistrations] discard failed: {e}")
            raise StoreUnavailable() from e


class MemoryPendingRegistrations:
    """In-process staging used when REDIS_URI is not configured, and in tests."""

    def __init__(self, clock=time.monotonic):
        self.clock = clock
        self._records: Dict[str, Tuple[float, PendingRegistration]] = {}

    async def stage(self, record: PendingRegistration, ttl_seconds: int) -> None:
        self._records[record.email] = (self.clock() + ttl_seconds, record)

    async def get(self, email: str) -> Optional[PendingRegistration]:
        entry = self._records.get(email)
        if entry is None:
            return None
        expires_at, record = entry
        if self.clock() >= expires_at:
            del self._records[email]
            return None
        return PendingRegistration(**asdict(record))

    async def mark_verified(self, email: str, ttl_seconds: int) -> Optional[PendingRegistration]:
        record = await self.get(email)
        if record is None:
            return None
        record.verified = True
        self._records[email] = (self.clock() + ttl_seconds, record)
        return record

    async def discard(self, email: str) -> None:
        self._records.pop(email, None)

    def clear(self) -> None:
        self._records.clear()
