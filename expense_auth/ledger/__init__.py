"""Authorization Ledger: allowlist store and change push channel."""

from expense_auth.ledger.store import (
    IdentityExistsError,
    IdentityNotFoundError,
    IdentityRecord,
    LedgerChange,
    LedgerStore,
    get_ledger_store,
    normalize_email,
    reset_ledger_store,
)
from expense_auth.ledger.events import (
    LedgerEventBus,
    LedgerSubscription,
    get_event_bus,
    publish_change,
    reset_event_bus,
)

__all__ = [
    "IdentityExistsError",
    "IdentityNotFoundError",
    "IdentityRecord",
    "LedgerChange",
    "LedgerStore",
    "get_ledger_store",
    "normalize_email",
    "reset_ledger_store",
    "LedgerEventBus",
    "LedgerSubscription",
    "get_event_bus",
    "publish_change",
    "reset_event_bus",
]
