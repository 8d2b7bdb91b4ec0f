"""Session Trust Orchestrator.

Client-side state machine for one user session::

    LOGGED_OUT -> AUTHORIZING -> AUTHORIZED -> PIN_PENDING -> ACTIVE -> LOGGED_OUT

``ACTIVE``/``PIN_PENDING`` drop to ``LOGGED_OUT`` at any time on explicit
logout or when the Revision Invalidation Listener reports that the
identity's Ledger row changed.

Every public operation returns an :class:`OperationResult`; expected
failures are never raised. Operations are awaited one at a time, but
the listener runs concurrently, so each success handler checks the
session generation before transitioning: an invalidation that happened
while a call was in flight always wins.
"""

import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from expense_auth.auth.session import session_ref
from expense_auth.client.api import AuthServiceClient
from expense_auth.client.device_trust import DeviceTrustStore, RevisionWatermarkStore
from expense_auth.client.listener import RevisionInvalidationListener
from expense_auth.client.storage import KeyValueStorage
from expense_auth.errors import (
    AuthorizationError,
    ExpenseAuthError,
    InvalidStateError,
    SessionInvalidatedError,
    TransportError,
)
from expense_auth.models import LedgerChangeEvent

log = logging.getLogger(__name__)

BOUND_SESSION_KEY = "bound_session"


class AuthState(str, Enum):
    LOGGED_OUT = "logged_out"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    PIN_PENDING = "pin_pending"
    ACTIVE = "active"


@dataclass
class PinStage:
    """PIN requirement of the current session."""

    required: bool
    has_pin: bool
    verified: bool

    @property
    def mode(self) -> str:
        return "verify" if self.has_pin else "create"

    @property
    def valid_operations(self) -> tuple[str, ...]:
        if self.verified:
            return ()
        return ("verify_pin",) if self.has_pin else ("create_pin",)


@dataclass
class BoundSession:
    """Client mirror of the server-side bound session."""

    token: str
    email: str
    name: str
    has_pin: bool
    revision: int
    verified: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> Optional["BoundSession"]:
        try:
            return cls(
                token=str(data["token"]),
                email=str(data["email"]),
                name=str(data["name"]),
                has_pin=bool(data["has_pin"]),
                revision=int(data["revision"]),
                verified=bool(data.get("verified", False)),
            )
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class OperationResult:
    """Outcome of an orchestrator operation."""

    success: bool
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def ok(cls) -> "OperationResult":
        return cls(success=True)

    @classmethod
    def from_error(cls, error: ExpenseAuthError) -> "OperationResult":
        return cls(success=False, error=error.message, code=error.code)


StateCallback = Callable[[AuthState, Optional[str]], None]
EventSourceFactory = Callable[[str], AsyncIterator[LedgerChangeEvent]]


class SessionTrustOrchestrator:
    """Owns the session, the PIN stage, device trust and the listener.

    Args:
        api: Service client
        storage: Key-value storage for trust record, watermarks and the
            persisted session
        event_source: Opens the change stream for a token (defaults to
            ``api.stream_ledger_events``)
        listen: Start the invalidation listener for bound sessions
        reconnect_backoff: First reconnect delay of the listener
    """

    def __init__(
        self,
        api: AuthServiceClient,
        storage: KeyValueStorage,
        event_source: Optional[EventSourceFactory] = None,
        listen: bool = True,
        reconnect_backoff: float = 0.5,
    ):
        self._api = api
        self._storage = storage
        self.device_trust = DeviceTrustStore(storage)
        self.watermarks = RevisionWatermarkStore(storage)
        self._event_source = event_source or api.stream_ledger_events
        self._listen = listen
        self._reconnect_backoff = reconnect_backoff

        self._state = AuthState.LOGGED_OUT
        self._session: Optional[BoundSession] = None
        self._pin_stage: Optional[PinStage] = None
        self._listener: Optional[RevisionInvalidationListener] = None
        self._generation = 0
        self._callbacks: list[StateCallback] = []

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def session(self) -> Optional[BoundSession]:
        """Copy of the bound session, None when logged out."""
        return replace(self._session) if self._session is not None else None

    @property
    def pin_stage(self) -> Optional[PinStage]:
        return replace(self._pin_stage) if self._pin_stage is not None else None

    @property
    def listener(self) -> Optional[RevisionInvalidationListener]:
        return self._listener

    def on_state_change(self, callback: StateCallback) -> None:
        """Register ``callback(state, reason)``; reason is set for invalidations."""
        self._callbacks.append(callback)

    def _set_state(self, state: AuthState, reason: Optional[str] = None) -> None:
        if state == self._state and reason is None:
            return
        log.debug(f"Session state {self._state.value} -> {state.value}")
        self._state = state
        for callback in list(self._callbacks):
            callback(state, reason)

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------

    async def login(self, email: str) -> OperationResult:
        """Authorize ``email`` on a fresh anonymous token.

        Lands in ``ACTIVE`` via the remembered-device fast path, or in
        ``PIN_PENDING`` otherwise. Any failure returns to ``LOGGED_OUT``.
        """
        if self._state != AuthState.LOGGED_OUT:
            return OperationResult.from_error(InvalidStateError("Already logged in. Log out first."))

        generation = self._next_generation()
        self._set_state(AuthState.AUTHORIZING)

        token: Optional[str] = None
        try:
            token = (await self._api.issue_token()).token
            auth = await self._api.authorize(token, email)
        except ExpenseAuthError as e:
            log.info(f"Login failed: {e.code}")
            if token is not None:
                await self._discard_token(token)
            if self._generation == generation:
                self._set_state(AuthState.LOGGED_OUT)
            return OperationResult.from_error(e)

        if self._generation != generation:
            await self._discard_token(token)
            return self._stale_result()

        session = BoundSession(
            token=token,
            email=auth.email,
            name=auth.name,
            has_pin=auth.has_pin,
            revision=auth.revision,
        )
        self._session = session
        self._set_state(AuthState.AUTHORIZED)

        # Single slot: trust held for anyone else goes with their watermark
        trusted_email = self.device_trust.current_email()
        if trusted_email is not None and trusted_email != auth.email:
            log.info(f"Clearing device trust of {trusted_email} for {auth.email}")
            self.device_trust.clear()
            self.watermarks.clear(trusted_email)

        remembered = self.device_trust.get(auth.email)
        if remembered and self.watermarks.get(auth.email) != auth.revision:
            log.info(f"Remembered device for {auth.email} is stale, clearing")
            self.device_trust.clear()
            self.watermarks.clear(auth.email)
            remembered = False

        if remembered and auth.has_pin:
            session.verified = True
            self._pin_stage = PinStage(required=False, has_pin=True, verified=True)
            self._persist_session()
            await self._start_listener(generation)
            self._set_state(AuthState.ACTIVE)
            log.info(f"Login for {auth.email} via remembered device")
            return OperationResult.ok()

        self._pin_stage = PinStage(required=True, has_pin=auth.has_pin, verified=False)
        self._persist_session()
        await self._start_listener(generation)
        self._set_state(AuthState.PIN_PENDING)
        log.info(f"Login for {auth.email} pending PIN {self._pin_stage.mode}")
        return OperationResult.ok()

    # -------------------------------------------------------------------------
    # PIN stage
    # -------------------------------------------------------------------------

    async def create_pin(self, pin: str, remember: bool = False) -> OperationResult:
        """Set the first PIN. Stays in ``PIN_PENDING`` on failure."""
        return await self._pin_operation("create", pin, remember)

    async def verify_pin(self, pin: str, remember: bool = False) -> OperationResult:
        """Check the PIN. Stays in ``PIN_PENDING`` on failure."""
        return await self._pin_operation("verify", pin, remember)

    async def _pin_operation(self, action: str, pin: str, remember: bool) -> OperationResult:
        stage = self._pin_stage
        if self._state != AuthState.PIN_PENDING or stage is None or stage.mode != action:
            return OperationResult.from_error(
                InvalidStateError(f"PIN {action} is not available in state {self._state.value}")
            )

        generation = self._generation
        session = self._session
        try:
            result = await self._api.pin(session.token, session.email, pin, action)
        except ExpenseAuthError as e:
            if self._generation != generation:
                return self._stale_result()
            await self._handle_session_error(e)
            return OperationResult.from_error(e)

        if self._generation != generation:
            log.info(f"Discarding PIN {action} response for an ended session")
            return self._stale_result()

        if self._listener is not None:
            self._listener.observe(result.revision)
        session.revision = result.revision
        session.has_pin = True
        session.verified = True
        self._pin_stage = PinStage(required=False, has_pin=True, verified=True)

        if remember:
            self.device_trust.set(session.email)
            self.watermarks.set(session.email, result.revision)
        elif self.device_trust.get(session.email):
            self.device_trust.clear()
            self.watermarks.clear(session.email)
        self._persist_session()
        self._set_state(AuthState.ACTIVE)
        log.info(f"PIN {action} succeeded for {session.email} (remember={remember})")
        return OperationResult.ok()

    # -------------------------------------------------------------------------
    # Session end
    # -------------------------------------------------------------------------

    async def logout(self) -> OperationResult:
        """End the session. Device trust is kept for the next login."""
        session = self._end_session()
        if session is not None:
            await self._stop_listener()
            await self._discard_token(session.token)
            log.info(f"Logged out {session.email}")
        self._set_state(AuthState.LOGGED_OUT)
        return OperationResult.ok()

    async def invalidate(self, reason: str = "session_invalidated") -> None:
        """Forced logout: also clears device trust and the watermark."""
        session = self._end_session()
        if session is None:
            return
        await self._stop_listener()
        self.device_trust.clear()
        self.watermarks.clear(session.email)
        await self._discard_token(session.token)
        log.info(f"Session for {session.email} invalidated: {reason}")
        self._set_state(AuthState.LOGGED_OUT, reason=reason)

    async def close(self) -> None:
        """Tear down the listener without ending the session."""
        await self._stop_listener()

    def _end_session(self) -> Optional[BoundSession]:
        self._next_generation()
        session, self._session = self._session, None
        self._pin_stage = None
        self._storage.delete(BOUND_SESSION_KEY)
        return session

    # -------------------------------------------------------------------------
    # Cold start and reconciliation
    # -------------------------------------------------------------------------

    async def restore(self) -> OperationResult:
        """Resume the persisted session, reconciling before returning.

        If the server cannot be reached the session is restored and the
        listener reconciles once the connection comes back.
        """
        if self._state != AuthState.LOGGED_OUT:
            return OperationResult.from_error(InvalidStateError("A session is already active"))

        data = self._storage.get(BOUND_SESSION_KEY)
        session = BoundSession.from_dict(data) if isinstance(data, dict) else None
        if session is None:
            if data is not None:
                self._storage.delete(BOUND_SESSION_KEY)
            return OperationResult(success=False, error="No saved session", code="no_session")

        generation = self._next_generation()
        self._session = session
        self._pin_stage = PinStage(
            required=not session.verified,
            has_pin=session.has_pin,
            verified=session.verified,
        )
        self._set_state(AuthState.AUTHORIZING)

        result = await self.reconcile()
        if self._generation != generation:
            return result if not result.success else self._stale_result()

        await self._start_listener(generation)
        self._set_state(AuthState.ACTIVE if session.verified else AuthState.PIN_PENDING)
        log.info(f"Restored session for {session.email} ({self._state.value})")
        return OperationResult.ok()

    async def reconcile(self) -> OperationResult:
        """Compare the row's current revision with what this session trusts.

        A mismatch, or a server answer that the session was revoked, runs
        the invalidation sequence; an expired token is a plain logout.
        """
        session = self._session
        if session is None:
            return OperationResult.from_error(InvalidStateError("No active session"))

        generation = self._generation
        try:
            row = await self._api.fetch_ledger_row(session.token)
        except ExpenseAuthError as e:
            if self._generation != generation:
                return self._stale_result()
            await self._handle_session_error(e)
            return OperationResult.from_error(e)

        if self._generation != generation:
            return self._stale_result()

        watermark = self.watermarks.get(session.email) if self.device_trust.get(session.email) else None
        expected = watermark if watermark is not None else session.revision
        if row.revision != expected or row.status != "active":
            log.info(
                f"Reconciliation mismatch for {session.email}: "
                f"ledger revision {row.revision}, expected {expected}"
            )
            await self.invalidate("revision_mismatch")
            return OperationResult.from_error(SessionInvalidatedError("revision_mismatch"))

        if self._listener is not None:
            self._listener.observe(row.revision)
        return OperationResult.ok()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    @staticmethod
    def _stale_result() -> OperationResult:
        return OperationResult.from_error(SessionInvalidatedError())

    async def _handle_session_error(self, error: ExpenseAuthError) -> None:
        """End the session when the server no longer recognises it."""
        if isinstance(error, SessionInvalidatedError):
            await self.invalidate(error.reason)
        elif isinstance(error, AuthorizationError) and error.code == "invalid_token":
            await self.logout()

    def _persist_session(self) -> None:
        if self._session is not None:
            self._storage.set(BOUND_SESSION_KEY, asdict(self._session))

    async def _discard_token(self, token: str) -> None:
        try:
            await self._api.logout(token)
        except ExpenseAuthError as e:
            log.debug(f"Token discard failed ({e.code}); it will expire server-side")

    async def _start_listener(self, generation: int) -> None:
        if not self._listen or self._session is None:
            return
        await self._stop_listener()
        token = self._session.token

        async def on_invalidate(reason: str) -> None:
            if self._generation != generation:
                return
            if reason == "invalid_token":
                await self.logout()
            else:
                await self.invalidate(reason)

        async def on_reconnect() -> bool:
            if self._generation != generation:
                return False
            result = await self.reconcile()
            if result.code == "connection_error":
                raise TransportError(result.error or "")
            return self._generation == generation

        self._listener = RevisionInvalidationListener(
            event_source=lambda: self._event_source(token),
            own_source=session_ref(token),
            on_invalidate=on_invalidate,
            on_reconnect=on_reconnect,
            observed_revision=self._session.revision,
            initial_backoff=self._reconnect_backoff,
        )
        await self._listener.start()

    async def _stop_listener(self) -> None:
        listener, self._listener = self._listener, None
        if listener is not None:
            await listener.stop()
