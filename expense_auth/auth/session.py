"""Server-side caller sessions.

A session starts as an anonymous caller token (no identity). The
Identity Authorization Service binds exactly one verified identity to
it; the Credential Service marks it PIN-verified. Sessions are stored
server-side; clients only ever hold the opaque token.

Revoked sessions are kept as tombstones until they expire so that a
caller can tell "your account changed" (``session_invalidated``) apart
from "unknown or expired token" (``invalid_token``).
"""

import asyncio
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

log = logging.getLogger(__name__)


def session_ref(token: str) -> str:
    """Public reference for a token, safe to put in push events."""
    return "session:" + hashlib.sha256(token.encode()).hexdigest()[:16]


@dataclass
class CallerSession:
    """Server record for one anonymous caller token.

    Attributes:
        session_id: The bearer token itself
        created_at: Issue time (UTC)
        expires_at: Expiry time (UTC)
        email: Bound identity, None until authorization succeeds
        name: Bound display name
        pin_verified: Whether the PIN stage completed on the server
        bound_revision: Ledger revision observed at binding time
        revoked_reason: Set when the session was revoked (tombstone)
    """

    session_id: str
    created_at: datetime
    expires_at: datetime
    email: Optional[str] = None
    name: Optional[str] = None
    pin_verified: bool = False
    bound_revision: Optional[int] = None
    revoked_reason: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def is_bound(self) -> bool:
        return self.email is not None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_reason is not None

    @property
    def ref(self) -> str:
        return session_ref(self.session_id)


class SessionBindingError(Exception):
    """Raised when re-binding a session to a different identity."""


class InMemorySessionStore:
    """Caller sessions held in process memory.

    All mutations take an asyncio lock; the store is shared by every
    request handler on the event loop.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, CallerSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, ttl_seconds: int) -> CallerSession:
        """Issue a new anonymous caller session."""
        now = datetime.now(timezone.utc)
        session = CallerSession(
            session_id=secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        async with self._lock:
            self._sessions[session.session_id] = session
        log.debug(f"Issued anonymous session {session.ref}")
        return session

    async def lookup(self, session_id: str) -> Optional[CallerSession]:
        """Get a session including revoked tombstones. Expired sessions are dropped."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if session.is_expired:
                del self._sessions[session_id]
                return None
            return session

    async def get(self, session_id: str) -> Optional[CallerSession]:
        """Get a live (not expired, not revoked) session."""
        session = await self.lookup(session_id)
        if session is None or session.is_revoked:
            return None
        return session

    async def bind(self, session_id: str, email: str, name: str, revision: int) -> CallerSession:
        """Attach a verified identity to a session.

        Identity fields are set once. Re-binding the same email (a
        repeated authorization) refreshes the name and revision;
        binding a different email is refused.

        Raises:
            KeyError: If the session does not exist or is not live.
            SessionBindingError: If the session is bound to another email.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.is_expired or session.is_revoked:
                raise KeyError(session_id)
            if session.email is not None and session.email != email:
                raise SessionBindingError(
                    f"Session {session.ref} already bound to a different identity"
                )
            session.email = email
            session.name = name
            session.bound_revision = revision
            return session

    async def mark_pin_verified(self, session_id: str) -> None:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and not session.is_revoked:
                session.pin_verified = True

    async def delete(self, session_id: str) -> bool:
        """Remove a session. Returns True if it existed."""
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def revoke_for_email(
        self,
        email: str,
        reason: str,
        except_session: Optional[str] = None,
    ) -> int:
        """Revoke every live session bound to ``email``.

        Args:
            email: Normalized Ledger email
            reason: Recorded on the tombstone
            except_session: Session ref (see :func:`session_ref`) to keep

        Returns:
            Number of sessions revoked.
        """
        count = 0
        async with self._lock:
            for session in self._sessions.values():
                if session.email != email or session.is_revoked:
                    continue
                if except_session is not None and session.ref == except_session:
                    continue
                session.revoked_reason = reason
                count += 1
        if count:
            log.info(f"Revoked {count} session(s) for {email}: {reason}")
        return count

    async def cleanup_expired(self) -> int:
        """Drop expired sessions and tombstones. Returns the number removed."""
        async with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            log.debug(f"Cleaned up {len(expired)} expired session(s)")
        return len(expired)

    @property
    def session_count(self) -> int:
        return len(self._sessions)


class SessionCleanupTask:
    """Background task that periodically drops expired sessions."""

    def __init__(self, store: InMemorySessionStore, interval: float):
        self._store = store
        self._interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker. Idempotent."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._worker())
        log.info(f"Session cleanup started (interval={self._interval}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("Session cleanup stopped")

    async def _worker(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self._store.cleanup_expired()
            except Exception:
                log.exception("Session cleanup pass failed")


# Global store instance
_session_store: Optional[InMemorySessionStore] = None


def get_session_store() -> InMemorySessionStore:
    """Get the global session store instance."""
    global _session_store
    if _session_store is None:
        _session_store = InMemorySessionStore()
    return _session_store


def reset_session_store() -> None:
    """Reset the global store (for testing)."""
    global _session_store
    _session_store = None
