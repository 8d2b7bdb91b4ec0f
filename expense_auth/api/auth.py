"""Session API endpoints for expense-auth.

Login is a three-step exchange on one bearer token:

1. ``POST /auth/anonymous`` issues an anonymous caller token
2. ``POST /auth/authorize`` binds an allowlisted email to the token
3. ``POST /auth/pin`` creates or verifies the identity's PIN

Every failure is answered with an ``{error, code}`` body (see
``expense_auth.main`` exception handlers).
"""

import logging

from fastapi import APIRouter, Depends, Request

from expense_auth.audit import client_ip, get_audit_logger
from expense_auth.auth.credential import CredentialService
from expense_auth.auth.dependencies import bearer_token, require_caller_session
from expense_auth.auth.identity import IdentityAuthorizationService
from expense_auth.auth.rate_limit import get_authorize_limiter
from expense_auth.auth.session import CallerSession, get_session_store
from expense_auth.errors import AuthorizationError, CredentialError, ExpenseAuthError
from expense_auth.models import (
    AnonymousTokenResponse,
    AuthorizeRequest,
    AuthorizeResponse,
    ErrorResponse,
    LogoutResponse,
    PinRequest,
    PinResponse,
    SessionStatusResponse,
)

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
}


@router.post("/anonymous", response_model=AnonymousTokenResponse)
async def issue_anonymous_token() -> AnonymousTokenResponse:
    """Issue a fresh anonymous caller token for one login attempt."""
    from expense_auth.config import SESSION_TTL_SECONDS

    session = await get_session_store().create(SESSION_TTL_SECONDS)
    return AnonymousTokenResponse(
        token=session.session_id,
        expires_at=session.expires_at.isoformat(),
    )


@router.post("/authorize", response_model=AuthorizeResponse, responses=_ERRORS)
async def authorize(
    request: Request,
    body: AuthorizeRequest,
    session: CallerSession = Depends(require_caller_session),
) -> AuthorizeResponse:
    """Check the claimed email against the allowlist and bind it to the token.

    Rate limited per client IP to slow down allowlist enumeration.
    """
    audit = get_audit_logger()
    limiter = get_authorize_limiter()
    ip = client_ip(request)

    if not await limiter.check_rate_limit(ip):
        remaining = await limiter.get_lockout_remaining(ip)
        audit.log_access(
            action="auth.authorize",
            principal_id="anonymous",
            status="denied",
            details={"reason": "rate_limited"},
            request=request,
        )
        raise CredentialError.too_many_attempts(remaining)

    try:
        result = await IdentityAuthorizationService().authorize(body.email, session.session_id)
    except AuthorizationError as e:
        if e.code in ("not_authorized", "suspended"):
            await limiter.record_attempt(ip, success=False)
        audit.log_access(
            action="auth.authorize",
            principal_id=(body.email or "anonymous").strip().lower(),
            status="denied",
            details={"reason": e.code},
            request=request,
        )
        raise

    await limiter.record_attempt(ip, success=True)
    audit.log_access(
        action="auth.authorize",
        principal_id=result.email,
        status="success",
        details={"has_pin": result.has_pin, "session": session.ref},
        request=request,
    )
    return result


@router.post("/pin", response_model=PinResponse, responses=_ERRORS)
async def pin(
    request: Request,
    body: PinRequest,
    session: CallerSession = Depends(require_caller_session),
) -> PinResponse:
    """Create or verify the PIN of the identity bound to the token."""
    audit = get_audit_logger()
    action = body.action if isinstance(body.action, str) else "invalid"

    try:
        result = await CredentialService().apply(session, body.email, body.pin, body.action)
    except ExpenseAuthError as e:
        audit.log_access(
            action=f"auth.pin.{action}",
            principal_id=session.email or "anonymous",
            status="denied",
            details={"reason": e.code},
            request=request,
        )
        raise

    audit.log_access(
        action=f"auth.pin.{action}",
        principal_id=session.email,
        status="success",
        details={"revision": result.revision},
        request=request,
    )
    return result


@router.post("/logout", response_model=LogoutResponse)
async def logout(request: Request) -> LogoutResponse:
    """Destroy the caller's token. Idempotent; unknown tokens are ignored."""
    token = bearer_token(request)
    principal_id = "anonymous"

    if token:
        store = get_session_store()
        session = await store.lookup(token)
        if session is not None and session.email:
            principal_id = session.email
        await store.delete(token)

    get_audit_logger().log_access(
        action="auth.logout",
        principal_id=principal_id,
        status="success",
        request=request,
    )
    return LogoutResponse(success=True)


@router.get("/session", response_model=SessionStatusResponse, responses=_ERRORS)
async def session_status(
    session: CallerSession = Depends(require_caller_session),
) -> SessionStatusResponse:
    """State of the caller's token."""
    return SessionStatusResponse(
        authenticated=session.is_bound,
        email=session.email,
        name=session.name,
        pin_verified=session.pin_verified,
        expires_at=session.expires_at.isoformat(),
    )
