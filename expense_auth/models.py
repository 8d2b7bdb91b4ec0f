"""Wire DTOs shared by the expense-auth server and client.

Request/response models for the authorization, credential, ledger and
admin endpoints. Data transfer objects only; no Ledger logic.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Session DTOs
# =============================================================================


class AnonymousTokenResponse(BaseModel):
    """A freshly issued anonymous caller token."""

    token: str = Field(..., description="Opaque bearer token")
    expires_at: str = Field(..., description="Token expiry (ISO8601)")


class AuthorizeRequest(BaseModel):
    """Claimed identity for the current anonymous caller."""

    email: Optional[str] = Field(None, description="Claimed email address")


class AuthorizeResponse(BaseModel):
    """Identity bound to the caller's session."""

    email: str = Field(..., description="Normalized email")
    name: str = Field(..., description="Display name")
    has_pin: bool = Field(..., description="Whether a PIN is configured")
    revision: int = Field(..., description="Ledger row revision at binding time")


class PinRequest(BaseModel):
    """PIN create/verify request.

    ``pin`` and ``action`` are deliberately loose so that malformed
    values reach the Credential Service and are rejected with a
    structured error instead of a schema error.
    """

    email: Optional[str] = Field(None, description="Bound email address")
    pin: Any = Field(None, description="Exactly 4 ASCII digits")
    action: Any = Field(None, description="'create' or 'verify'")


class PinResponse(BaseModel):
    """Successful PIN operation."""

    success: bool = Field(True)
    revision: int = Field(..., description="Ledger row revision after the operation")


class LogoutResponse(BaseModel):
    success: bool = Field(True)


class SessionStatusResponse(BaseModel):
    """State of the caller's session."""

    authenticated: bool = Field(..., description="Whether the token is live and bound")
    email: Optional[str] = None
    name: Optional[str] = None
    pin_verified: bool = False
    expires_at: Optional[str] = None


class ErrorResponse(BaseModel):
    """Structured error payload returned by every endpoint."""

    error: str = Field(..., description="User-facing message")
    code: str = Field(..., description="Stable error code")


# =============================================================================
# Ledger DTOs
# =============================================================================


IdentityStatus = Literal["active", "suspended"]


class LedgerSnapshot(BaseModel):
    """Client-visible view of an AuthorizedIdentity row.

    ``pin_stamp`` is an opaque digest that changes whenever the PIN is
    set or reset. The PIN itself never leaves the server.
    """

    email: str
    name: str
    status: IdentityStatus
    has_pin: bool
    pin_stamp: Optional[str] = None
    revision: int


class LedgerChangeEvent(BaseModel):
    """A single row change delivered over the push channel."""

    type: Literal["update", "delete"] = "update"
    source: str = Field(..., description="'admin' or the writer's session reference")
    old: Optional[LedgerSnapshot] = None
    new: Optional[LedgerSnapshot] = None


# =============================================================================
# Admin DTOs
# =============================================================================


class CreateIdentityRequest(BaseModel):
    email: str = Field(..., description="Email to authorize")
    name: str = Field(..., description="Display name")
    status: IdentityStatus = Field("active")

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v


class UpdateIdentityRequest(BaseModel):
    name: Optional[str] = Field(None, description="New display name")
    status: Optional[IdentityStatus] = Field(None, description="New status")


class DeleteIdentityResponse(BaseModel):
    success: bool = Field(True)
    email: str


class IdentityListResponse(BaseModel):
    identities: list[LedgerSnapshot]
    count: int


class AuditLogEntry(BaseModel):
    """Single audit log entry."""

    timestamp: float
    action: str
    principal_id: str
    status: str
    details: dict = Field(default_factory=dict)
    source_ip: str = ""


class AuditLogResponse(BaseModel):
    count: int
    events: list[AuditLogEntry]
    summary: dict
