"""Authentication and authorization module for expense-auth."""

from expense_auth.auth.session import (
    CallerSession,
    InMemorySessionStore,
    SessionBindingError,
    get_session_store,
    reset_session_store,
    session_ref,
)
from expense_auth.auth.rate_limit import (
    AttemptLimiter,
    get_authorize_limiter,
    get_pin_limiter,
    reset_rate_limiters,
)
from expense_auth.auth.identity import IdentityAuthorizationService
from expense_auth.auth.credential import CredentialService, hash_pin, check_pin, is_valid_pin
from expense_auth.auth.dependencies import (
    bearer_token,
    require_admin_key,
    require_bound_session,
    require_caller_session,
    require_verified_session,
)

__all__ = [
    # Sessions
    "CallerSession",
    "InMemorySessionStore",
    "SessionBindingError",
    "get_session_store",
    "reset_session_store",
    "session_ref",
    # Throttling
    "AttemptLimiter",
    "get_authorize_limiter",
    "get_pin_limiter",
    "reset_rate_limiters",
    # Services
    "IdentityAuthorizationService",
    "CredentialService",
    "hash_pin",
    "check_pin",
    "is_valid_pin",
    # Dependencies
    "bearer_token",
    "require_admin_key",
    "require_bound_session",
    "require_caller_session",
    "require_verified_session",
]
