"""Credential Service: 4-digit PIN create/verify.

PINs are stored as bcrypt hashes on the identity's Ledger row. Both
actions touch exactly one row: ``create`` is a single UPDATE that also
bumps the revision stamp, ``verify`` is a read. Shape validation runs
before the Ledger is touched, so a malformed PIN never causes a write.
"""

import logging
import re
from typing import Any, Optional

import bcrypt as bcrypt_lib

from expense_auth.auth.rate_limit import AttemptLimiter, get_pin_limiter
from expense_auth.auth.session import CallerSession, InMemorySessionStore, get_session_store
from expense_auth.config import PIN_LENGTH
from expense_auth.errors import AuthorizationError, CredentialError, InvalidRequestError
from expense_auth.ledger.events import publish_change
from expense_auth.ledger.store import (
    IdentityNotFoundError,
    LedgerStore,
    get_ledger_store,
    normalize_email,
)
from expense_auth.models import PinResponse

log = logging.getLogger(__name__)

PIN_PATTERN = re.compile(rf"[0-9]{{{PIN_LENGTH}}}")

ACTIONS = ("create", "verify")


def is_valid_pin(pin: Any) -> bool:
    """Exactly four ASCII digits, as a string."""
    return isinstance(pin, str) and PIN_PATTERN.fullmatch(pin) is not None


def hash_pin(pin: str, rounds: Optional[int] = None) -> str:
    """Hash a PIN using bcrypt.

    Args:
        pin: The validated 4-digit PIN
        rounds: bcrypt cost factor (default: PIN_BCRYPT_ROUNDS)

    Returns:
        The bcrypt hash string
    """
    if rounds is None:
        from expense_auth.config import PIN_BCRYPT_ROUNDS
        rounds = PIN_BCRYPT_ROUNDS
    salt = bcrypt_lib.gensalt(rounds=rounds)
    return bcrypt_lib.hashpw(pin.encode(), salt).decode()


def check_pin(pin: str, pin_hash: str) -> bool:
    """Compare a PIN with its stored hash (constant time)."""
    try:
        return bcrypt_lib.checkpw(pin.encode(), pin_hash.encode())
    except ValueError:
        log.error("Stored PIN hash is malformed")
        return False


class CredentialService:
    """PIN operations for the identity bound to a caller session."""

    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        sessions: Optional[InMemorySessionStore] = None,
        limiter: Optional[AttemptLimiter] = None,
    ):
        self._ledger = ledger or get_ledger_store()
        self._sessions = sessions or get_session_store()
        self._limiter = limiter or get_pin_limiter()

    async def apply(self, session: CallerSession, email: Optional[str], pin: Any, action: Any) -> PinResponse:
        """Run a create or verify action for the caller.

        Args:
            session: The caller's live session
            email: Email the client believes is bound
            pin: Candidate PIN (validated here)
            action: "create" or "verify"

        Raises:
            InvalidRequestError: Missing email or unknown action
            CredentialError: invalid_pin_format / no_pin_configured /
                pin_mismatch / no_pending_identity / too_many_attempts
            AuthorizationError: The bound identity left the Ledger
        """
        normalized = normalize_email(email or "")
        if not normalized:
            raise InvalidRequestError.missing_field("email")
        if action not in ACTIONS:
            raise InvalidRequestError.invalid_action(action)

        if not session.is_bound or session.email != normalized:
            log.warning(f"PIN {action} without a pending identity for {normalized}")
            raise CredentialError.no_pending_identity()

        if not is_valid_pin(pin):
            raise CredentialError.invalid_pin_format()

        if action == "create":
            return await self._create(session, normalized, pin)
        return await self._verify(session, normalized, pin)

    async def _create(self, session: CallerSession, email: str, pin: str) -> PinResponse:
        try:
            change = self._ledger.set_pin_hash(email, hash_pin(pin))
        except IdentityNotFoundError:
            raise AuthorizationError.not_authorized()

        await self._sessions.mark_pin_verified(session.session_id)
        await publish_change(change, source=session.ref, except_session=session.ref)

        log.info(f"PIN created for {email}")
        return PinResponse(success=True, revision=change.new.revision)

    async def _verify(self, session: CallerSession, email: str, pin: str) -> PinResponse:
        if not await self._limiter.check_rate_limit(email):
            remaining = await self._limiter.get_lockout_remaining(email)
            raise CredentialError.too_many_attempts(remaining)

        identity = self._ledger.get_identity(email)
        if identity is None:
            raise AuthorizationError.not_authorized()
        if not identity.has_pin:
            raise CredentialError.no_pin_configured()

        if not check_pin(pin, identity.pin_hash):
            await self._limiter.record_attempt(email, success=False)
            log.info(f"Invalid PIN attempt for {email}")
            raise CredentialError.pin_mismatch()

        await self._limiter.record_attempt(email, success=True)
        await self._sessions.mark_pin_verified(session.session_id)

        log.info(f"PIN verified for {email}")
        return PinResponse(success=True, revision=identity.revision)
