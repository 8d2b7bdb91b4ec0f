"""Admin endpoints for the Authorization Ledger.

Add, edit, suspend, PIN-reset and delete authorized identities, plus
the audit log viewer. All endpoints require the ``X-Admin-Key`` header.

Every write bumps the row's revision, revokes the sessions derived from
the old row and pushes a change event to connected clients.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from expense_auth.audit import get_audit_logger
from expense_auth.auth.dependencies import require_admin_key
from expense_auth.errors import ExpenseAuthError, InvalidRequestError
from expense_auth.ledger.events import ADMIN_SOURCE, publish_change
from expense_auth.ledger.store import (
    IdentityExistsError,
    IdentityNotFoundError,
    LedgerChange,
    get_ledger_store,
    normalize_email,
)
from expense_auth.models import (
    AuditLogEntry,
    AuditLogResponse,
    CreateIdentityRequest,
    DeleteIdentityResponse,
    ErrorResponse,
    IdentityListResponse,
    LedgerSnapshot,
    UpdateIdentityRequest,
)

log = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_key)],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


def _not_found(email: str) -> ExpenseAuthError:
    return ExpenseAuthError(
        code="identity_not_found",
        message=f"No authorized identity for '{email}'",
        status_code=404,
    )


async def _commit(request: Request, action: str, change: LedgerChange) -> None:
    await publish_change(change, source=ADMIN_SOURCE)
    details = {"email": change.email}
    if change.new is not None:
        details["revision"] = change.new.revision
    get_audit_logger().log_access(
        action=action,
        principal_id="admin",
        status="success",
        details=details,
        request=request,
    )


# =============================================================================
# Identities
# =============================================================================


@router.get("/identities", response_model=IdentityListResponse)
async def list_identities() -> IdentityListResponse:
    """All authorized identities, newest first."""
    records = get_ledger_store().list_identities()
    return IdentityListResponse(
        identities=[r.snapshot() for r in records],
        count=len(records),
    )


@router.post(
    "/identities",
    response_model=LedgerSnapshot,
    status_code=201,
    responses={409: {"model": ErrorResponse}},
)
async def add_identity(request: Request, body: CreateIdentityRequest) -> LedgerSnapshot:
    """Authorize a new email."""
    if not body.name.strip():
        raise InvalidRequestError.missing_field("name")
    try:
        record = get_ledger_store().add_identity(body.email, body.name, body.status)
    except IdentityExistsError:
        raise ExpenseAuthError(
            code="identity_exists",
            message=f"'{body.email}' is already authorized",
            status_code=409,
        )

    get_audit_logger().log_access(
        action="admin.identity.create",
        principal_id="admin",
        status="success",
        details={"email": record.email, "status": record.status},
        request=request,
    )
    log.info(f"Identity {record.email} authorized by admin")
    return record.snapshot()


@router.patch(
    "/identities/{email}",
    response_model=LedgerSnapshot,
    responses={404: {"model": ErrorResponse}},
)
async def update_identity(
    request: Request,
    email: str,
    body: UpdateIdentityRequest,
) -> LedgerSnapshot:
    """Edit name and/or status (suspend or reactivate)."""
    if body.name is None and body.status is None:
        raise InvalidRequestError.malformed("nothing to update")
    if body.name is not None and not body.name.strip():
        raise InvalidRequestError.missing_field("name")

    email = normalize_email(email)
    try:
        change = get_ledger_store().update_identity(email, name=body.name, status=body.status)
    except IdentityNotFoundError:
        raise _not_found(email)

    await _commit(request, "admin.identity.update", change)
    return change.new.snapshot()


@router.post(
    "/identities/{email}/reset-pin",
    response_model=LedgerSnapshot,
    responses={404: {"model": ErrorResponse}},
)
async def reset_pin(request: Request, email: str) -> LedgerSnapshot:
    """Clear the PIN; the next login goes through PIN creation."""
    email = normalize_email(email)
    try:
        change = get_ledger_store().set_pin_hash(email, None)
    except IdentityNotFoundError:
        raise _not_found(email)

    await _commit(request, "admin.identity.reset_pin", change)
    return change.new.snapshot()


@router.delete(
    "/identities/{email}",
    response_model=DeleteIdentityResponse,
    responses={404: {"model": ErrorResponse}},
)
async def delete_identity(request: Request, email: str) -> DeleteIdentityResponse:
    """Remove an identity from the allowlist."""
    email = normalize_email(email)
    try:
        change = get_ledger_store().delete_identity(email)
    except IdentityNotFoundError:
        raise _not_found(email)

    await _commit(request, "admin.identity.delete", change)
    return DeleteIdentityResponse(success=True, email=email)


# =============================================================================
# Audit Log Viewer
# =============================================================================


@router.get("/audit-logs", response_model=AuditLogResponse)
async def get_audit_logs(
    limit: int = 100,
    action: Optional[str] = None,
    status: Optional[str] = None,
) -> AuditLogResponse:
    """Recent audit events from the in-memory buffer.

    Query parameters:
    - limit: Max events to return (default 100)
    - action: Filter by action prefix (e.g. "auth.", "admin.")
    - status: Filter by status ("success", "denied")
    """
    audit = get_audit_logger()
    events = audit.get_recent_events(limit=limit, action_filter=action, status_filter=status)
    return AuditLogResponse(
        count=len(events),
        events=[
            AuditLogEntry(
                timestamp=e.timestamp,
                action=e.action,
                principal_id=e.principal_id,
                status=e.status,
                details=e.details,
                source_ip=e.source_ip,
            )
            for e in events
        ],
        summary=audit.get_summary(),
    )
