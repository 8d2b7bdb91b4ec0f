"""Tests for server-side caller sessions and attempt limiting."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from expense_auth.auth.rate_limit import AttemptLimiter
from expense_auth.auth.session import (
    InMemorySessionStore,
    SessionBindingError,
    SessionCleanupTask,
    session_ref,
)


# =============================================================================
# Session Store Tests
# =============================================================================


class TestInMemorySessionStore:
    @pytest.mark.asyncio
    async def test_create_is_anonymous(self):
        store = InMemorySessionStore()
        session = await store.create(ttl_seconds=60)

        assert not session.is_bound
        assert not session.pin_verified
        assert len(session.session_id) >= 40
        assert await store.get(session.session_id) is session

    @pytest.mark.asyncio
    async def test_bind_sets_identity_once(self):
        store = InMemorySessionStore()
        session = await store.create(ttl_seconds=60)

        await store.bind(session.session_id, "a@x.com", "A", revision=3)
        assert session.email == "a@x.com"
        assert session.bound_revision == 3

        # Same identity may be re-bound (refresh)
        await store.bind(session.session_id, "a@x.com", "A2", revision=4)
        assert session.name == "A2"

        with pytest.raises(SessionBindingError):
            await store.bind(session.session_id, "b@x.com", "B", revision=1)
        assert session.email == "a@x.com"

    @pytest.mark.asyncio
    async def test_bind_unknown_session(self):
        store = InMemorySessionStore()
        with pytest.raises(KeyError):
            await store.bind("nope", "a@x.com", "A", revision=1)

    @pytest.mark.asyncio
    async def test_expired_session_dropped(self):
        store = InMemorySessionStore()
        session = await store.create(ttl_seconds=60)
        session.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert await store.lookup(session.session_id) is None
        assert store.session_count == 0

    @pytest.mark.asyncio
    async def test_revoke_for_email_keeps_tombstone(self):
        store = InMemorySessionStore()
        mine = await store.create(ttl_seconds=60)
        other = await store.create(ttl_seconds=60)
        stranger = await store.create(ttl_seconds=60)
        await store.bind(mine.session_id, "a@x.com", "A", revision=1)
        await store.bind(other.session_id, "a@x.com", "A", revision=1)
        await store.bind(stranger.session_id, "b@x.com", "B", revision=1)

        revoked = await store.revoke_for_email("a@x.com", "ledger_changed", except_session=mine.ref)

        assert revoked == 1
        assert await store.get(mine.session_id) is mine
        assert await store.get(other.session_id) is None
        tombstone = await store.lookup(other.session_id)
        assert tombstone.revoked_reason == "ledger_changed"
        assert await store.get(stranger.session_id) is stranger

    @pytest.mark.asyncio
    async def test_revoked_session_not_marked_verified(self):
        store = InMemorySessionStore()
        session = await store.create(ttl_seconds=60)
        await store.bind(session.session_id, "a@x.com", "A", revision=1)
        await store.revoke_for_email("a@x.com", "ledger_changed")

        await store.mark_pin_verified(session.session_id)
        assert not session.pin_verified

    @pytest.mark.asyncio
    async def test_cleanup_expired(self):
        store = InMemorySessionStore()
        live = await store.create(ttl_seconds=60)
        dead = await store.create(ttl_seconds=60)
        dead.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        assert await store.cleanup_expired() == 1
        assert store.session_count == 1
        assert await store.get(live.session_id) is live

    def test_session_ref_is_stable_and_opaque(self):
        ref = session_ref("token-value")
        assert ref == session_ref("token-value")
        assert ref.startswith("session:")
        assert "token-value" not in ref


class TestSessionCleanupTask:
    @pytest.mark.asyncio
    async def test_start_stop(self):
        store = InMemorySessionStore()
        dead = await store.create(ttl_seconds=60)
        dead.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)

        task = SessionCleanupTask(store, interval=0.01)
        await task.start()
        await task.start()
        assert task.running

        for _ in range(50):
            if store.session_count == 0:
                break
            await asyncio.sleep(0.01)
        await task.stop()

        assert store.session_count == 0
        assert not task.running


# =============================================================================
# Attempt Limiter Tests
# =============================================================================


class TestAttemptLimiter:
    @pytest.mark.asyncio
    async def test_disabled_always_allows(self):
        limiter = AttemptLimiter("pin", max_attempts=0, window_seconds=60, lockout_seconds=60)
        for _ in range(20):
            await limiter.record_attempt("a@x.com", success=False)
        assert await limiter.check_rate_limit("a@x.com")

    @pytest.mark.asyncio
    async def test_locks_after_max_failures(self):
        limiter = AttemptLimiter("pin", max_attempts=3, window_seconds=60, lockout_seconds=60)
        for _ in range(3):
            assert await limiter.check_rate_limit("a@x.com")
            await limiter.record_attempt("a@x.com", success=False)

        assert not await limiter.check_rate_limit("a@x.com")
        assert 0 < await limiter.get_lockout_remaining("a@x.com") <= 61
        assert await limiter.check_rate_limit("b@x.com")

    @pytest.mark.asyncio
    async def test_success_clears_failures(self):
        limiter = AttemptLimiter("pin", max_attempts=3, window_seconds=60, lockout_seconds=60)
        await limiter.record_attempt("a@x.com", success=False)
        await limiter.record_attempt("a@x.com", success=False)
        await limiter.record_attempt("a@x.com", success=True)
        await limiter.record_attempt("a@x.com", success=False)

        assert await limiter.check_rate_limit("a@x.com")

    @pytest.mark.asyncio
    async def test_lockout_expires(self):
        limiter = AttemptLimiter("pin", max_attempts=1, window_seconds=60, lockout_seconds=0)
        await limiter.record_attempt("a@x.com", success=False)
        assert await limiter.check_rate_limit("a@x.com")

    @pytest.mark.asyncio
    async def test_success_kept_when_not_resetting(self):
        limiter = AttemptLimiter(
            "authorize", max_attempts=3, window_seconds=60, lockout_seconds=60, reset_on_success=False
        )
        await limiter.record_attempt("10.0.0.1", success=False)
        await limiter.record_attempt("10.0.0.1", success=False)
        await limiter.record_attempt("10.0.0.1", success=True)
        await limiter.record_attempt("10.0.0.1", success=False)

        assert not await limiter.check_rate_limit("10.0.0.1")

    @pytest.mark.asyncio
    async def test_stale_keys_pruned(self):
        limiter = AttemptLimiter("authorize", max_attempts=5, window_seconds=0.05, lockout_seconds=60)
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            await limiter.record_attempt(ip, success=False)
        assert limiter.tracked_keys == 3

        await asyncio.sleep(0.06)
        await limiter.record_attempt("10.0.0.4", success=False)

        assert limiter.tracked_keys == 1
