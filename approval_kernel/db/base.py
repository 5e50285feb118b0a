"""
Module: approval_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, the type annotation map for consistent
    column types, and the TimestampedBase mixin for created/updated stamps.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel.  ALL model files import from here.  This module MUST NOT import from
    models/, services/, selectors/, domain/, or outer layers.

Invariants enforced:
    - UUID primary keys: Every model inherits a uuid4-generated primary key.
    - Amount precision: Decimal maps to Numeric(38, 9).  Estimated amounts
      and approval thresholds are never stored as float.
    - Timestamps are timezone-aware on PostgreSQL.

Failure modes:
    - IntegrityError if a model attempts to INSERT a duplicate UUID.

Audit relevance:
    created_at / updated_at on workflow headers are part of the record the
    audit trail refers to; they are set from the injected Clock, not from
    the database server, so that replays are deterministic.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Contract:
        Transparently converts between Python UUID objects and their
        36-character string representation.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
        - cache_ok=True enables SQLAlchemy statement caching.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(str(value))
        return None


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - Decimal maps to Numeric(38, 9).
        - datetime maps to DateTime(timezone=True).
        - int maps to BigInteger -- safe for monotonic counters.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TimestampedBase(Base):
    """
    Abstract base with clock-driven creation and modification stamps.

    Contract:
        Services set both columns explicitly from their injected Clock;
        there is no server default.  Every mutation of a row derived from
        this base must touch ``updated_at`` so that version counters bump
        even when no other header column changes.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(nullable=False)


# Re-export UUID for convenience
UUID = PyUUID
