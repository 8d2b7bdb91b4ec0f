"""expense-auth configuration.

Configurable defaults may be overridden via environment variables
(``EXPENSE_AUTH_*``). Values are read at import time; tests change the
environment and reload this module.
"""

import os

# =============================================================================
# PIN CREDENTIAL CONSTANTS (fixed)
# =============================================================================

PIN_LENGTH: int = 4

# =============================================================================
# PERSISTENCE
# =============================================================================

DATABASE_URL: str = os.getenv("EXPENSE_AUTH_DATABASE_URL", "sqlite:///./data/expense_auth.db")

# =============================================================================
# SESSIONS
# =============================================================================

SESSION_TTL_SECONDS: int = int(os.getenv("EXPENSE_AUTH_SESSION_TTL_SECONDS", "86400"))
SESSION_CLEANUP_INTERVAL: float = float(os.getenv("EXPENSE_AUTH_SESSION_CLEANUP_INTERVAL", "300"))

# =============================================================================
# CREDENTIALS & THROTTLING
# =============================================================================

# bcrypt cost factor for stored PIN hashes (2^12 = 4096 iterations)
PIN_BCRYPT_ROUNDS: int = int(os.getenv("EXPENSE_AUTH_PIN_BCRYPT_ROUNDS", "12"))

# 0 disables PIN lockout
PIN_MAX_ATTEMPTS: int = int(os.getenv("EXPENSE_AUTH_PIN_MAX_ATTEMPTS", "0"))
PIN_LOCKOUT_SECONDS: int = int(os.getenv("EXPENSE_AUTH_PIN_LOCKOUT_SECONDS", "900"))

# 0 disables authorization throttling
AUTHORIZE_MAX_ATTEMPTS: int = int(os.getenv("EXPENSE_AUTH_AUTHORIZE_MAX_ATTEMPTS", "0"))
AUTHORIZE_WINDOW_SECONDS: int = int(os.getenv("EXPENSE_AUTH_AUTHORIZE_WINDOW_SECONDS", "900"))

# =============================================================================
# ADMINISTRATION
# =============================================================================

# Empty key disables the admin API
ADMIN_KEY: str = os.getenv("EXPENSE_AUTH_ADMIN_KEY", "")

# =============================================================================
# PUSH CHANNEL
# =============================================================================

EVENT_KEEPALIVE_SECONDS: float = float(os.getenv("EXPENSE_AUTH_EVENT_KEEPALIVE_SECONDS", "15"))

# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("EXPENSE_AUTH_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("EXPENSE_AUTH_HTTP_PORT", "8000"))


def _parse_cors_origins() -> list[str]:
    env = os.getenv("EXPENSE_AUTH_CORS_ORIGINS", "*")
    return [o.strip() for o in env.split(",") if o.strip()] or ["*"]


CORS_ORIGINS: list[str] = _parse_cors_origins()

# =============================================================================
# LOGGING & AUDIT
# =============================================================================

LOG_LEVEL: str = os.getenv("EXPENSE_AUTH_LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("EXPENSE_AUTH_LOG_FORMAT", "json")
AUDIT_BUFFER_SIZE: int = int(os.getenv("EXPENSE_AUTH_AUDIT_BUFFER_SIZE", "1000"))
