"""
Tests for staged registrations.
"""
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from hivegate.services.errors import StoreUnavailable
from hivegate.services.pending_registration import (
    KEY_PREFIX, MemoryPendingRegistrations, PendingRegistration, RedisPendingRegistrations,
)


class TestMemoryPendingRegistrations:
    @pytest.mark.asyncio
    async def test_stage_and_get(self, pending_store):
        await pending_store.stage(PendingRegistration(email="new@x.com", username="newuser", password_hash="h"), 300)

        record = await pending_store.get("new@x.com")
        assert record.username == "newuser"
        assert record.password_hash == "h"
        assert record.verified is False

    @pytest.mark.asyncio
    async def test_mark_verified(self, pending_store):
        await pending_store.stage(PendingRegistration(email="new@x.com", username="newuser"), 300)

        assert (await pending_store.mark_verified("new@x.com", 300)).verified is True
        assert (await pending_store.get("new@x.com")).verified is True
        assert await pending_store.mark_verified("other@x.com", 300) is None

    @pytest.mark.asyncio
    async def test_records_expire(self):
        now = [100.0]
        store = MemoryPendingRegistrations(clock=lambda: now[0])
        await store.stage(PendingRegistration(email="new@x.com", username="newuser"), 300)

        now[0] += 299
        assert await store.get("new@x.com") is not None
        now[0] += 1
        assert await store.get("new@x.com") is None

    @pytest.mark.asyncio
    async def test_mark_verified_restarts_expiry(self):
        now = [100.0]
        store = MemoryPendingRegistrations(clock=lambda: now[0])
        await store.stage(PendingRegistration(email="new@x.com", username="newuser"), 300)

        now[0] += 290
        await store.mark_verified("new@x.com", 300)
        now[0] += 200

        record = await store.get("new@x.com")
        assert record is not None
        assert record.verified is True

    @pytest.mark.asyncio
    async def test_discard(self, pending_store):
        await pending_store.stage(PendingRegistration(email="new@x.com", username="newuser"), 300)
        await pending_store.discard("new@x.com")
        await pending_store.discard("new@x.com")

        assert await pending_store.get("new@x.com") is None


class TestRedisPendingRegistrations:
    @pytest.mark.asyncio
    async def test_stage_uses_setex(self, mock_redis):
        store = RedisPendingRegistrations(mock_redis)
        await store.stage(PendingRegistration(email="new@x.com", username="newuser", password_hash="h"), 300)

        key, ttl, payload = mock_redis.setex.await_args.args
        assert key == KEY_PREFIX + "new@x.com"
        assert ttl == 300
        assert json.loads(payload) == {
            "email": "new@x.com", "username": "newuser", "password_hash": "h", "verified": False,
        }

    @pytest.mark.asyncio
    async def test_get_decodes_bytes(self, mock_redis):
        mock_redis.get.return_value = json.dumps(
            {"email": "new@x.com", "username": "newuser", "password_hash": None, "verified": True}
        ).encode()
        store = RedisPendingRegistrations(mock_redis)

        record = await store.get("new@x.com")
        assert record.verified is True
        mock_redis.get.assert_awaited_once_with(KEY_PREFIX + "new@x.com")

    @pytest.mark.asyncio
    async def test_mark_verified_restarts_ttl(self, mock_redis):
        mock_redis.get.return_value = json.dumps(
            {"email": "new@x.com", "username": "newuser", "password_hash": "h", "verified": False}
        )
        store = RedisPendingRegistrations(mock_redis)

        record = await store.mark_verified("new@x.com", 300)

        assert record.verified is True
        key, ttl, payload = mock_redis.setex.await_args.args
        assert key == KEY_PREFIX + "new@x.com"
        assert ttl == 300
        assert json.loads(payload)["verified"] is True

    @pytest.mark.asyncio
    async def test_mark_verified_missing(self, mock_redis):
        store = RedisPendingRegistrations(mock_redis)

        assert await store.mark_verified("new@x.com", 300) is None
        mock_redis.setex.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_errors_become_store_unavailable(self, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("down")
        store = RedisPendingRegistrations(mock_redis)

        with pytest.raises(StoreUnavailable):
            await store.get("new@x.com")
