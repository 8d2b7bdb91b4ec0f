"""Device Trust Store and revision watermarks.

The trust record is a single slot (``device_trust``) holding the one
email that may skip PIN entry on this device. Its watermark is the
Ledger revision that was current when trust was granted; the record is
only honoured while the server still reports that revision.
"""

import logging
from typing import Optional

from expense_auth.client.storage import KeyValueStorage

log = logging.getLogger(__name__)

DEVICE_TRUST_KEY = "device_trust"
WATERMARK_KEY_PREFIX = "revision_watermark:"


def _normalize(email: str) -> str:
    return (email or "").strip().lower()


class DeviceTrustStore:
    """Single-slot remembered-device record. Last write wins."""

    def __init__(self, storage: KeyValueStorage):
        self._storage = storage

    def get(self, email: str) -> bool:
        """True iff the slot holds a remembered record for ``email``."""
        record = self._storage.get(DEVICE_TRUST_KEY)
        if not isinstance(record, dict):
            return False
        return record.get("email") == _normalize(email) and record.get("remembered") is True

    def current_email(self) -> Optional[str]:
        """Email held in the slot, if any."""
        record = self._storage.get(DEVICE_TRUST_KEY)
        if isinstance(record, dict) and isinstance(record.get("email"), str):
            return record["email"]
        return None

    def set(self, email: str) -> None:
        self._storage.set(DEVICE_TRUST_KEY, {"email": _normalize(email), "remembered": True})
        log.debug(f"Device trust granted for {_normalize(email)}")

    def clear(self) -> None:
        self._storage.delete(DEVICE_TRUST_KEY)


class RevisionWatermarkStore:
    """Last Ledger revision acknowledged per email."""

    def __init__(self, storage: KeyValueStorage):
        self._storage = storage

    def get(self, email: str) -> Optional[int]:
        value = self._storage.get(WATERMARK_KEY_PREFIX + _normalize(email))
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    def set(self, email: str, revision: int) -> None:
        self._storage.set(WATERMARK_KEY_PREFIX + _normalize(email), int(revision))

    def clear(self, email: str) -> None:
        self._storage.delete(WATERMARK_KEY_PREFIX + _normalize(email))
