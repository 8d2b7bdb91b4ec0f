"""Identity Authorization Service.

Turns a claimed email plus an anonymous caller token into a bound
session: the email must be on the Ledger allowlist and not suspended.
The binding lives server-side, so the client can never forge the
identity attached to its token. Read-only on the Ledger.
"""

import logging
from typing import Optional

from expense_auth.auth.session import InMemorySessionStore, SessionBindingError, get_session_store
from expense_auth.errors import AuthorizationError, InvalidRequestError
from expense_auth.ledger.store import LedgerStore, get_ledger_store, normalize_email
from expense_auth.models import AuthorizeResponse

log = logging.getLogger(__name__)


class IdentityAuthorizationService:
    """Allowlist check and session binding."""

    def __init__(
        self,
        ledger: Optional[LedgerStore] = None,
        sessions: Optional[InMemorySessionStore] = None,
    ):
        self._ledger = ledger or get_ledger_store()
        self._sessions = sessions or get_session_store()

    async def authorize(self, email: Optional[str], session_id: str) -> AuthorizeResponse:
        """Verify allowlist membership and bind the identity to the session.

        Args:
            email: Claimed email (any case, surrounding whitespace allowed)
            session_id: The caller's anonymous token, already validated

        Returns:
            The bound identity with its PIN presence and revision.

        Raises:
            InvalidRequestError: Email missing or blank
            AuthorizationError: not_authorized / suspended / invalid_token,
                or already_bound if the token carries a different identity
        """
        normalized = normalize_email(email or "")
        if not normalized:
            raise InvalidRequestError.missing_field("email")

        identity = self._ledger.get_identity(normalized)
        if identity is None:
            log.info(f"Authorization denied, not on allowlist: {normalized}")
            raise AuthorizationError.not_authorized()

        if identity.is_suspended:
            log.warning(f"Authorization denied, suspended: {normalized}")
            raise AuthorizationError.suspended()

        try:
            await self._sessions.bind(
                session_id,
                email=identity.email,
                name=identity.name,
                revision=identity.revision,
            )
        except KeyError:
            raise AuthorizationError.invalid_token()
        except SessionBindingError:
            raise AuthorizationError.already_bound()

        log.info(f"Authorized {identity.email} (has_pin={identity.has_pin}, revision={identity.revision})")
        return AuthorizeResponse(
            email=identity.email,
            name=identity.name,
            has_pin=identity.has_pin,
            revision=identity.revision,
        )
