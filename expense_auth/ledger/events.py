"""In-process push channel for Ledger row changes.

Subscribers are scoped to one email (the row-level filter of the push
channel). Every Ledger write is published as a
:class:`~expense_auth.models.LedgerChangeEvent` carrying the old and new
row snapshots.

A subscriber whose queue overflows is closed rather than silently
losing events; its client reconnects and reconciles by revision.
"""

import asyncio
import logging
from typing import Optional

from expense_auth.ledger.store import LedgerChange, normalize_email
from expense_auth.models import LedgerChangeEvent

log = logging.getLogger(__name__)

__all__ = [
    "LedgerEventBus",
    "LedgerSubscription",
    "change_event",
    "publish_change",
    "get_event_bus",
    "reset_event_bus",
]

ADMIN_SOURCE = "admin"

# Per-subscriber backlog before the subscription is dropped
SUBSCRIBER_QUEUE_SIZE = 100


class SubscriptionClosed(Exception):
    """Raised by a closed subscription."""


class LedgerSubscription:
    """Live feed of change events for one email.

    Async-iterable; iteration ends once the subscription is closed.
    Not restartable: subscribe again for a new feed.
    """

    def __init__(self, bus: "LedgerEventBus", email: str):
        self._bus = bus
        self.email = email
        self._queue: asyncio.Queue[Optional[LedgerChangeEvent]] = asyncio.Queue(
            maxsize=SUBSCRIBER_QUEUE_SIZE
        )
        self.closed = False

    def _deliver(self, event: LedgerChangeEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            log.warning(f"Subscriber backlog full for {self.email}, closing subscription")
            self.close()
            return False

    async def get(self, timeout: Optional[float] = None) -> Optional[LedgerChangeEvent]:
        """Next event, or None on timeout.

        Raises:
            SubscriptionClosed: Once the subscription is closed and drained.
        """
        if self.closed and self._queue.empty():
            raise SubscriptionClosed(self.email)
        try:
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
        if event is None:
            raise SubscriptionClosed(self.email)
        return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._remove(self)
        # Sentinel wakes a pending get(); the queue may be full on overflow
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> LedgerChangeEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


class LedgerEventBus:
    """Fan-out of Ledger change events to per-email subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[LedgerSubscription]] = {}

    def subscribe(self, email: str) -> LedgerSubscription:
        email = normalize_email(email)
        sub = LedgerSubscription(self, email)
        self._subscribers.setdefault(email, set()).add(sub)
        log.debug(f"Subscribed to ledger events for {email}")
        return sub

    def _remove(self, sub: LedgerSubscription) -> None:
        subs = self._subscribers.get(sub.email)
        if subs is None:
            return
        subs.discard(sub)
        if not subs:
            del self._subscribers[sub.email]

    def publish(self, event: LedgerChangeEvent) -> int:
        """Deliver an event to every subscriber of its row.

        Returns:
            Number of subscribers the event was delivered to.
        """
        snapshot = event.new or event.old
        if snapshot is None:
            return 0
        subs = list(self._subscribers.get(snapshot.email, ()))
        delivered = sum(1 for sub in subs if sub._deliver(event))
        log.debug(
            f"Published {event.type} for {snapshot.email} from {event.source} "
            f"to {delivered} subscriber(s)"
        )
        return delivered

    def subscriber_count(self, email: Optional[str] = None) -> int:
        if email is not None:
            return len(self._subscribers.get(normalize_email(email), ()))
        return sum(len(s) for s in self._subscribers.values())

    def close_all(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs):
                sub.close()


def change_event(change: LedgerChange, source: str) -> LedgerChangeEvent:
    """Wire form of a Ledger write."""
    return LedgerChangeEvent(
        type=change.type,
        source=source,
        old=change.old.snapshot() if change.old else None,
        new=change.new.snapshot() if change.new else None,
    )


async def publish_change(
    change: LedgerChange,
    source: str = ADMIN_SOURCE,
    except_session: Optional[str] = None,
) -> None:
    """Announce a Ledger write and end every session derived from the old row.

    Sessions bound to the row's email are revoked server-side (the
    writer's own session, ``except_session``, survives), then the event
    is pushed to subscribers so connected clients log out immediately.
    """
    from expense_auth.auth.session import get_session_store

    reason = "identity_deleted" if change.type == "delete" else "ledger_changed"
    revoked = await get_session_store().revoke_for_email(
        change.email, reason=reason, except_session=except_session
    )
    delivered = get_event_bus().publish(change_event(change, source))
    log.info(
        f"Ledger change for {change.email}: revoked {revoked} session(s), "
        f"notified {delivered} subscriber(s)"
    )


# Global bus instance
_event_bus: Optional[LedgerEventBus] = None


def get_event_bus() -> LedgerEventBus:
    """Get the global event bus instance."""
    global _event_bus
    if _event_bus is None:
        _event_bus = LedgerEventBus()
    return _event_bus


def reset_event_bus() -> None:
    """Reset the global bus (for testing)."""
    global _event_bus
    if _event_bus is not None:
        _event_bus.close_all()
    _event_bus = None
