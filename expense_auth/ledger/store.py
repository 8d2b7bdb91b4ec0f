"""Authorization Ledger store.

Reads and writes AuthorizedIdentity rows. Every write is a single-row
UPDATE that bumps ``revision`` in the same statement, so no cross-row
transaction is ever needed. Write methods return a :class:`LedgerChange`
describing the row before and after, which callers publish on the
event bus.

Design note: uses synchronous SQLAlchemy sessions. Every operation
touches one row by its unique email, and the service is a single small
deployment; async DB access would add complexity without benefit.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update

from expense_auth.db.models import AuthorizedIdentity
from expense_auth.models import LedgerSnapshot

log = logging.getLogger(__name__)

VALID_STATUSES = ("active", "suspended")


class IdentityNotFoundError(Exception):
    """Raised when no Ledger row exists for an email."""


class IdentityExistsError(Exception):
    """Raised when adding an email that is already authorized."""


def _get_db_session():
    """Late-binding accessor for the DB session context manager.

    Imported at call time so that test fixtures can reload
    expense_auth.db.session with a new engine and the store picks it up.
    """
    from expense_auth.db.session import get_db_session
    return get_db_session()


def normalize_email(email: str) -> str:
    """Ledger key form of an email: trimmed and lowercased."""
    return (email or "").strip().lower()


def pin_stamp(pin_hash: Optional[str]) -> Optional[str]:
    """Opaque marker that changes whenever the stored PIN changes."""
    if not pin_hash:
        return None
    return hashlib.sha256(pin_hash.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class IdentityRecord:
    """Detached copy of a Ledger row."""

    email: str
    name: str
    status: str
    pin_hash: Optional[str]
    revision: int

    @property
    def has_pin(self) -> bool:
        return bool(self.pin_hash)

    @property
    def is_suspended(self) -> bool:
        return self.status == "suspended"

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            email=self.email,
            name=self.name,
            status=self.status,
            has_pin=self.has_pin,
            pin_stamp=pin_stamp(self.pin_hash),
            revision=self.revision,
        )


@dataclass(frozen=True)
class LedgerChange:
    """Before/after view of one row write."""

    old: Optional[IdentityRecord]
    new: Optional[IdentityRecord]

    @property
    def email(self) -> str:
        return (self.new or self.old).email

    @property
    def type(self) -> str:
        return "delete" if self.new is None else "update"


def _record(row: AuthorizedIdentity) -> IdentityRecord:
    return IdentityRecord(
        email=row.email,
        name=row.name,
        status=row.status,
        pin_hash=row.pin_hash,
        revision=row.revision,
    )


class LedgerStore:
    """Allowlist of identities backed by the ``authorized_identities`` table."""

    # -- Reads --

    def get_identity(self, email: str) -> Optional[IdentityRecord]:
        """Look up a row by email (case-insensitive). None if absent."""
        with _get_db_session() as db:
            row = db.query(AuthorizedIdentity).filter_by(email=normalize_email(email)).first()
            return _record(row) if row is not None else None

    def list_identities(self) -> list[IdentityRecord]:
        """All rows, newest first."""
        with _get_db_session() as db:
            rows = (
                db.query(AuthorizedIdentity)
                .order_by(AuthorizedIdentity.created_at.desc(), AuthorizedIdentity.id.desc())
                .all()
            )
            return [_record(r) for r in rows]

    # -- Writes --

    def add_identity(self, email: str, name: str, status: str = "active") -> IdentityRecord:
        """Authorize a new email.

        Raises:
            IdentityExistsError: If the email is already in the Ledger.
            ValueError: If status is not a known status.
        """
        if status not in VALID_STATUSES:
            raise ValueError(f"Invalid status: {status}")
        email = normalize_email(email)

        with _get_db_session() as db:
            if db.query(AuthorizedIdentity).filter_by(email=email).first() is not None:
                raise IdentityExistsError(f"Identity already exists: {email}")
            row = AuthorizedIdentity(email=email, name=name.strip(), status=status, revision=1)
            db.add(row)
            db.flush()
            record = _record(row)

        log.info(f"Authorized identity added: {email} (status={status})")
        return record

    def set_pin_hash(self, email: str, pin_hash: Optional[str]) -> LedgerChange:
        """Store (or clear, with None) the PIN hash. Overwrites any existing PIN."""
        return self._update(email, pin_hash=pin_hash)

    def update_identity(
        self,
        email: str,
        name: Optional[str] = None,
        status: Optional[str] = None,
    ) -> LedgerChange:
        """Administrative edit of name and/or status."""
        values = {}
        if name is not None:
            values["name"] = name.strip()
        if status is not None:
            if status not in VALID_STATUSES:
                raise ValueError(f"Invalid status: {status}")
            values["status"] = status
        return self._update(email, **values)

    def delete_identity(self, email: str) -> LedgerChange:
        """Remove a row. Raises IdentityNotFoundError if absent."""
        email = normalize_email(email)
        with _get_db_session() as db:
            row = db.query(AuthorizedIdentity).filter_by(email=email).first()
            if row is None:
                raise IdentityNotFoundError(f"Identity not found: {email}")
            old = _record(row)
            db.delete(row)

        log.info(f"Authorized identity deleted: {email}")
        return LedgerChange(old=old, new=None)

    def _update(self, email: str, **values) -> LedgerChange:
        """Single-row UPDATE that always bumps the revision stamp."""
        email = normalize_email(email)
        with _get_db_session() as db:
            row = db.query(AuthorizedIdentity).filter_by(email=email).first()
            if row is None:
                raise IdentityNotFoundError(f"Identity not found: {email}")
            old = _record(row)

            db.execute(
                update(AuthorizedIdentity)
                .where(AuthorizedIdentity.email == email)
                .values(
                    revision=AuthorizedIdentity.revision + 1,
                    updated_at=datetime.now(timezone.utc),
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            db.refresh(row)
            new = _record(row)

        log.info(
            f"Ledger row updated: {email} revision {old.revision} -> {new.revision} "
            f"fields={sorted(values)}"
        )
        return LedgerChange(old=old, new=new)


# Global store instance
_ledger_store: Optional[LedgerStore] = None


def get_ledger_store() -> LedgerStore:
    """Get the global Ledger store instance."""
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = LedgerStore()
    return _ledger_store


def reset_ledger_store() -> None:
    """Reset the global store (for testing)."""
    global _ledger_store
    _ledger_store = None
