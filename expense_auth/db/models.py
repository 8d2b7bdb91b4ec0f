"""SQLAlchemy models for the Authorization Ledger.

One row per authorized identity. ``revision`` is bumped in the same
UPDATE statement as every write so that clients can detect remote
mutation by comparing revision stamps.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class AuthorizedIdentity(Base):
    """Allowlisted identity with its status and PIN credential."""
    __tablename__ = "authorized_identities"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, unique=True, index=True)  # lowercase, trimmed
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")  # active | suspended
    pin_hash = Column(String(60), nullable=True)  # bcrypt hash; NULL = no PIN
    revision = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    updated_at = Column(DateTime, nullable=False, default=_utcnow, onupdate=_utcnow)
