"""FastAPI dependencies for caller-token authentication.

Every protected route declares the weakest session it needs:

- ``require_caller_session``: any live token (anonymous or bound)
- ``require_bound_session``: token bound to an authorized identity
- ``require_verified_session``: bound and PIN-verified

Missing, unknown or expired tokens fail with ``invalid_token``; tokens
revoked because their Ledger row changed fail with
``session_invalidated``.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Request

from expense_auth.auth.session import CallerSession, get_session_store
from expense_auth.errors import AuthorizationError, ExpenseAuthError, SessionInvalidatedError

log = logging.getLogger(__name__)


def bearer_token(request: Request) -> Optional[str]:
    """Extract the token from ``Authorization: Bearer <token>``."""
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


async def require_caller_session(request: Request) -> CallerSession:
    token = bearer_token(request)
    if token is None:
        raise AuthorizationError.invalid_token()

    session = await get_session_store().lookup(token)
    if session is None:
        raise AuthorizationError.invalid_token()
    if session.is_revoked:
        log.info(f"Rejected revoked session {session.ref}: {session.revoked_reason}")
        raise SessionInvalidatedError(session.revoked_reason)
    return session


async def require_bound_session(
    session: CallerSession = Depends(require_caller_session),
) -> CallerSession:
    if not session.is_bound:
        raise AuthorizationError.invalid_token()
    return session


async def require_verified_session(
    session: CallerSession = Depends(require_bound_session),
) -> CallerSession:
    if not session.pin_verified:
        raise ExpenseAuthError(
            code="pin_required",
            message="PIN verification is required",
            status_code=401,
        )
    return session


def require_admin_key(request: Request) -> None:
    """Guard for the admin API (``X-Admin-Key`` header).

    Reads the key from config at request time so config reloads in
    tests take effect. An empty configured key disables the admin API.
    """
    from expense_auth.config import ADMIN_KEY

    if not ADMIN_KEY:
        raise ExpenseAuthError(code="admin_disabled", message="Admin API is disabled", status_code=503)

    provided = request.headers.get("x-admin-key", "")
    if not provided or not secrets.compare_digest(provided, ADMIN_KEY):
        client = request.client.host if request.client else "unknown"
        log.warning(f"Invalid admin key from {client}")
        raise ExpenseAuthError(code="admin_unauthorized", message="Unauthorized", status_code=401)
