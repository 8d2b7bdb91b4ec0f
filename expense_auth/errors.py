"""expense-auth exceptions mapped to wire error codes.

Every error carries a stable ``code`` (sent on the wire next to the
user-facing ``message``) and the HTTP status the server answers with.
The client rebuilds the same exception from an ``{error, code}`` body
via :func:`error_from_payload`.
"""

from typing import Optional


class ExpenseAuthError(Exception):
    """Base exception for identity, credential and session errors."""

    status_code: int = 400

    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code}


class AuthorizationError(ExpenseAuthError):
    """Identity is not allowed to open a session. Terminal for the attempt."""

    status_code = 403

    @classmethod
    def not_authorized(cls) -> "AuthorizationError":
        return cls(
            code="not_authorized",
            message="This email is not authorized. Please contact the administrator.",
        )

    @classmethod
    def suspended(cls) -> "AuthorizationError":
        return cls(
            code="suspended",
            message="Your account has been suspended. Please contact the administrator.",
        )

    @classmethod
    def invalid_token(cls) -> "AuthorizationError":
        return cls(code="invalid_token", message="Missing or invalid session token", status_code=401)

    @classmethod
    def already_bound(cls) -> "AuthorizationError":
        return cls(
            code="already_bound",
            message="This session is already bound to another identity. Log out first.",
            status_code=409,
        )


class CredentialError(ExpenseAuthError):
    """PIN stage failure. The PIN stage stays open for another attempt."""

    @classmethod
    def invalid_pin_format(cls) -> "CredentialError":
        return cls(code="invalid_pin_format", message="PIN must be exactly 4 digits")

    @classmethod
    def no_pin_configured(cls) -> "CredentialError":
        return cls(code="no_pin_configured", message="No PIN is configured for this account")

    @classmethod
    def pin_mismatch(cls) -> "CredentialError":
        return cls(code="pin_mismatch", message="Incorrect PIN", status_code=401)

    @classmethod
    def no_pending_identity(cls) -> "CredentialError":
        return cls(
            code="no_pending_identity",
            message="No authorized identity is pending for this session",
            status_code=409,
        )

    @classmethod
    def too_many_attempts(cls, retry_after: int) -> "CredentialError":
        err = cls(
            code="too_many_attempts",
            message="Too many failed attempts. Please try again later.",
            status_code=429,
        )
        err.retry_after = retry_after
        return err


class InvalidRequestError(ExpenseAuthError):
    """Malformed request body."""

    @classmethod
    def missing_field(cls, field: str) -> "InvalidRequestError":
        return cls(code="invalid_request", message=f"'{field}' is required")

    @classmethod
    def invalid_action(cls, action: object) -> "InvalidRequestError":
        return cls(code="invalid_request", message=f"Invalid action: {action!r}")

    @classmethod
    def malformed(cls, reason: str) -> "InvalidRequestError":
        return cls(code="invalid_request", message=f"Malformed request: {reason}")


class SessionInvalidatedError(ExpenseAuthError):
    """The session's Ledger row changed; the session must end silently."""

    status_code = 401

    def __init__(self, reason: str = "session_invalidated"):
        self.reason = reason
        super().__init__(code="session_invalidated", message="Session is no longer valid")


class TransportError(ExpenseAuthError):
    """Network failure or service unavailable. Retry is manual."""

    status_code = 503

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(code="connection_error", message="Connection error. Please try again.")


class InvalidStateError(ExpenseAuthError):
    """Client-side: operation is not valid in the current session state."""

    def __init__(self, message: str):
        super().__init__(code="invalid_state", message=message, status_code=409)


_CODE_MAP = {
    "not_authorized": AuthorizationError.not_authorized,
    "suspended": AuthorizationError.suspended,
    "invalid_token": AuthorizationError.invalid_token,
    "already_bound": AuthorizationError.already_bound,
    "invalid_pin_format": CredentialError.invalid_pin_format,
    "no_pin_configured": CredentialError.no_pin_configured,
    "pin_mismatch": CredentialError.pin_mismatch,
    "no_pending_identity": CredentialError.no_pending_identity,
}


def error_from_payload(payload: dict, status_code: int) -> ExpenseAuthError:
    """Rebuild a taxonomy error from an ``{error, code}`` response body.

    The server's message is kept so the client renders exactly what the
    server said.
    """
    code = payload.get("code") or ""
    message = payload.get("error") or ""

    if code == "session_invalidated":
        return SessionInvalidatedError(payload.get("reason") or code)
    if code == "too_many_attempts":
        err = CredentialError.too_many_attempts(int(payload.get("retry_after") or 0))
    elif code in _CODE_MAP:
        err = _CODE_MAP[code]()
    elif code == "invalid_request":
        err = InvalidRequestError(code=code, message=message)
    elif status_code >= 500:
        return TransportError(f"server returned {status_code}: {message}")
    else:
        err = ExpenseAuthError(code=code or "unknown_error", message=message, status_code=status_code)

    if message:
        err.message = message
    return err
