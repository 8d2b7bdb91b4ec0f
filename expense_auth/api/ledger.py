"""Ledger read and push-channel endpoints.

``GET /ledger/me`` returns the snapshot of the caller's own row and
``GET /ledger/me/events`` streams its changes as server-sent events.
Both are scoped to the identity bound to the caller's token; a caller
can never read or subscribe to another row.
"""

import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from expense_auth.auth.dependencies import require_bound_session
from expense_auth.auth.session import CallerSession, get_session_store
from expense_auth.errors import SessionInvalidatedError
from expense_auth.ledger.events import LedgerSubscription, SubscriptionClosed, get_event_bus
from expense_auth.ledger.store import get_ledger_store
from expense_auth.models import ErrorResponse, LedgerSnapshot

log = logging.getLogger(__name__)

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("/me", response_model=LedgerSnapshot, responses={401: {"model": ErrorResponse}})
async def get_own_row(
    session: CallerSession = Depends(require_bound_session),
) -> LedgerSnapshot:
    """Snapshot of the caller's Ledger row, used for revision reconciliation."""
    identity = get_ledger_store().get_identity(session.email)
    if identity is None:
        raise SessionInvalidatedError("identity_deleted")
    return identity.snapshot()


async def ledger_event_stream(
    subscription: LedgerSubscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    keepalive_seconds: float,
    session_id: Optional[str] = None,
) -> AsyncIterator[str]:
    """Render a subscription as ``text/event-stream`` frames.

    Emits a comment frame every ``keepalive_seconds`` without traffic.
    The stream ends when the client disconnects, the subscription is
    closed, or (when ``session_id`` is given) the session stops being
    live after an event was delivered.
    """
    try:
        yield ": connected\n\n"
        while True:
            if await is_disconnected():
                log.debug(f"Event stream client for {subscription.email} disconnected")
                break
            try:
                event = await subscription.get(timeout=keepalive_seconds)
            except SubscriptionClosed:
                break
            if event is None:
                yield ": keepalive\n\n"
                continue

            yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"

            if session_id is not None and await get_session_store().get(session_id) is None:
                log.info(f"Closing event stream for {subscription.email}: session ended")
                break
    finally:
        subscription.close()


@router.get("/me/events", responses={401: {"model": ErrorResponse}})
async def stream_own_row_events(
    request: Request,
    session: CallerSession = Depends(require_bound_session),
) -> StreamingResponse:
    """Server-sent events for changes to the caller's Ledger row."""
    from expense_auth.config import EVENT_KEEPALIVE_SECONDS

    subscription = get_event_bus().subscribe(session.email)
    log.info(f"Event stream opened for {session.email} ({session.ref})")

    return StreamingResponse(
        ledger_event_stream(
            subscription,
            request.is_disconnected,
            EVENT_KEEPALIVE_SECONDS,
            session_id=session.session_id,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
