"""
Persistence for OTP challenges.

Both stores expose the same narrow set of primitives. Every mutation of an
existing challenge is a single conditional update so that concurrent verify
calls cannot push the attempt counter past the cap or consume a challenge
twice.
"""
from __future__ import annotations

import asyncio
import copy
import functools
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from hivegate.services.errors import StoreUnavailable

logger = logging.getLogger(__name__)

OTP_MAX_ATTEMPTS = 3


def _aware(value: datetime) -> datetime:
    # Mongo hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class OtpChallenge:
    email: str
    username: str
    code: str
    issued_at: datetime
    expires_at: datetime
    attempts: int = 0
    consumed: bool = False
    id: Any = field(default=None)

    @property
    def remaining_attempts(self) -> int:
        return max(0, OTP_MAX_ATTEMPTS - self.attempts)

    def to_doc(self) -> Dict[str, Any]:
        doc = asdict(self)
        doc.pop("id")
        return doc

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> "OtpChallenge":
        return cls(
            id=doc.get("_id"),
            email=doc["email"],
            username=doc.get("username", ""),
            code=doc["code"],
            issued_at=_aware(doc["issued_at"]),
            expires_at=_aware(doc["expires_at"]),
            attempts=int(doc.get("attempts", 0)),
            consumed=bool(doc.get("consumed", False)),
        )


def _guarded(fn):
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except PyMongoError as e:
            logger.error(f"[OtpStore] {fn.__name__} failed: {e}")
            raise StoreUnavailable() from e
    return wrapper


class MongoOtpStore:
    """OTP challenges in a MongoDB collection with a TTL index on expires_at."""

    def __init__(self, collection):
        self.collection = collection

    @_guarded
    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("email", ASCENDING), ("consumed", ASCENDING)])
        await self.collection.create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)

    @_guarded
    async def replace(self, challenge: OtpChallenge) -> OtpChallenge:
        await self.collection.delete_many({"email": challenge.email})
        result = await self.collection.insert_one(challenge.to_doc())
        challenge.id = result.inserted_id
        return challenge

    @_guarded
    async def latest_live(self, email: str) -> Optional[OtpChallenge]:
        doc = await self.collection.find_one(
            {"email": email, "consumed": False},
            sort=[("issued_at", DESCENDING)],
        )
        return OtpChallenge.from_doc(doc) if doc else None

    @_guarded
    async def get(self, challenge_id: Any) -> Optional[OtpChallenge]:
        doc = await self.collection.find_one({"_id": challenge_id})
        return OtpChallenge.from_doc(doc) if doc else None

    @_guarded
    async def record_failure(self, challenge_id: Any) -> Optional[OtpChallenge]:
        doc = await self.collection.find_one_and_update(
            {"_id": challenge_id, "consumed": False, "attempts": {"$lt": OTP_MAX_ATTEMPTS}},
            {"$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )
        return OtpChallenge.from_doc(doc) if doc else None

    @_guarded
    async def consume(self, challenge_id: Any, code: str) -> Optional[OtpChallenge]:
        doc = await self.collection.find_one_and_update(
            {
                "_id": challenge_id,
                "consumed": False,
                "code": code,
                "attempts": {"$lt": OTP_MAX_ATTEMPTS},
            },
            {"$set": {"consumed": True}},
            return_document=ReturnDocument.AFTER,
        )
        return OtpChallenge.from_doc(doc) if doc else None

    @_guarded
    async def purge(self, email: str) -> int:
        result = await self.collection.delete_many({"email": email})
        return result.deleted_count


class MemoryOtpStore:
    """In-process store used when MONGODB_URI is not configured, and in tests."""

    def __init__(self):
        self._challenges: Dict[str, OtpChallenge] = {}
        self._lock = asyncio.Lock()

    async def ensure_indexes(self) -> None:
        return None

    async def replace(self, challenge: OtpChallenge) -> OtpChallenge:
        async with self._lock:
            self._drop(challenge.email)
            challenge.id = uuid.uuid4().hex
            self._challenges[challenge.id] = copy.copy(challenge)
            return challenge

    async def latest_live(self, email: str) -> Optional[OtpChallenge]:
        async with self._lock:
            live = [c for c in self._challenges.values() if c.email == email and not c.consumed]
            if not live:
                return None
            return copy.copy(max(live, key=lambda c: c.issued_at))

    async def get(self, challenge_id: Any) -> Optional[OtpChallenge]:
        async with self._lock:
            found = self._challenges.get(challenge_id)
            return copy.copy(found) if found else None

    async def record_failure(self, challenge_id: Any) -> Optional[OtpChallenge]:
        async with self._lock:
            found = self._challenges.get(challenge_id)
            if found is None or found.consumed or found.attempts >= OTP_MAX_ATTEMPTS:
                return None
            found.attempts += 1
            return copy.copy(found)

    async def consume(self, challenge_id: Any, code: str) -> Optional[OtpChallenge]:
        async with self._lock:
            found = self._challenges.get(challenge_id)
            if found is None or found.consumed or found.code != code or found.attempts >= OTP_MAX_ATTEMPTS:
                return None
            found.consumed = True
            return copy.copy(found)

    async def purge(self, email: str) -> int:
        async with self._lock:
            return self._drop(email)

    def _drop(self, email: str) -> int:
        stale = [cid for cid, c in self._challenges.items() if c.email == email]
        for cid in stale:
            del self._challenges[cid]
        return len(stale)

    def clear(self) -> None:
        self._challenges.clear()
