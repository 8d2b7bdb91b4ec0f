"""Revision Invalidation Listener.

Watches the bound identity's Ledger row over the push channel and
forces a logout as soon as the row changes underneath the session.

Policy: any change to a tracked field (name, status, PIN presence or
stamp, revision) or a delete invalidates the session. The only
exception is an event written by this client's own session (its own
PIN creation), which just advances the observed revision.

On stream loss the listener reconnects with exponential backoff and
reconciles by revision after every reconnect, so changes made while
disconnected are still detected.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from expense_auth.errors import (
    AuthorizationError,
    ExpenseAuthError,
    SessionInvalidatedError,
    TransportError,
)
from expense_auth.models import LedgerChangeEvent, LedgerSnapshot

log = logging.getLogger(__name__)

TRACKED_FIELDS = ("name", "status", "has_pin", "pin_stamp", "revision")

EventSource = Callable[[], AsyncIterator[LedgerChangeEvent]]


def tracked_fields_changed(old: Optional[LedgerSnapshot], new: Optional[LedgerSnapshot]) -> bool:
    if old is None or new is None:
        return old is not new
    return any(getattr(old, f) != getattr(new, f) for f in TRACKED_FIELDS)


class RevisionInvalidationListener:
    """Background consumer of one session's Ledger change stream.

    Args:
        event_source: Opens a new stream of change events for the bound row
        own_source: Event ``source`` value of this client's session
        on_invalidate: Awaited with a reason when the session must end
        on_reconnect: Awaited after each reconnect; returns False if the
            session ended during reconciliation
        initial_backoff: First reconnect delay in seconds
        max_backoff: Cap on the reconnect delay
    """

    def __init__(
        self,
        event_source: EventSource,
        own_source: str,
        on_invalidate: Callable[[str], Awaitable[None]],
        on_reconnect: Optional[Callable[[], Awaitable[bool]]] = None,
        observed_revision: Optional[int] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
    ):
        self._source = event_source
        self.own_source = own_source
        self._on_invalidate = on_invalidate
        self._on_reconnect = on_reconnect
        self._observed_revision = observed_revision
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.reconnects = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def observed_revision(self) -> Optional[int]:
        return self._observed_revision

    def observe(self, revision: int) -> None:
        """Record a revision this session is known to be consistent with."""
        if self._observed_revision is None or revision > self._observed_revision:
            self._observed_revision = revision

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start consuming the stream. Idempotent."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._worker())
        log.debug("Revision invalidation listener started")

    async def stop(self) -> None:
        """Unsubscribe. Safe to call from the listener's own callbacks."""
        self._running = False
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        log.debug("Revision invalidation listener stopped")

    # -------------------------------------------------------------------------
    # Event policy
    # -------------------------------------------------------------------------

    async def handle_event(self, event: LedgerChangeEvent) -> bool:
        """Apply the invalidation policy to one event.

        Returns:
            True if the session was invalidated.
        """
        if event.source == self.own_source:
            if event.new is not None:
                self.observe(event.new.revision)
            log.debug(f"Own ledger write observed (revision={self._observed_revision})")
            return False

        if event.type == "delete" or event.new is None:
            await self._invalidate("identity_deleted")
            return True

        if self._observed_revision is not None and event.new.revision <= self._observed_revision:
            # Already accounted for
            return False

        if tracked_fields_changed(event.old, event.new) or self._observed_revision is None:
            await self._invalidate("ledger_changed")
            return True
        return False

    async def _invalidate(self, reason: str) -> None:
        self._running = False
        log.info(f"Session invalidated by ledger listener: {reason}")
        await self._on_invalidate(reason)

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    async def _worker(self) -> None:
        attempt = 0
        while self._running:
            stream = self._source()
            try:
                async for event in stream:
                    attempt = 0
                    if await self.handle_event(event):
                        return
                log.info("Ledger event stream closed by server")
            except SessionInvalidatedError as e:
                await self._invalidate(e.reason)
                return
            except AuthorizationError as e:
                await self._invalidate(e.code)
                return
            except TransportError as e:
                log.info(f"Ledger event stream unavailable: {e.detail}")
            except ExpenseAuthError as e:
                log.warning(f"Ledger event stream refused: {e.code}")
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()

            if not self._running:
                return

            delay = min(self._initial_backoff * (2 ** attempt), self._max_backoff)
            attempt += 1
            log.info(f"Reconnecting ledger event stream in {delay:.1f}s (attempt {attempt})")
            await asyncio.sleep(delay)
            self.reconnects += 1

            if self._on_reconnect is not None and self._running:
                try:
                    if not await self._on_reconnect():
                        self._running = False
                        return
                except TransportError as e:
                    log.info(f"Reconciliation after reconnect failed: {e.detail}")
