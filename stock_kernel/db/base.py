"""
Module: stock_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.
    Provides the UUID primary key convention, portable UUID and UTC
    timestamp column types, and the tenant-scoped mixin.
Architecture position: Kernel > DB.  Lowest-level import target within
    the kernel.  ALL model files import from here.  MUST NOT import from
    models/, services/, selectors/, or api/.

Invariants enforced:
    - UUID primary keys: every model inherits a uuid4-generated key.
    - Money is integer minor units: ``int`` maps to BigInteger.  NEVER
      use float for costs.
    - Timestamps are timezone-aware UTC on every backend.  SQLite drops
      tzinfo on storage; UTCDateTime normalizes on bind and re-attaches
      UTC on load.
    - Tenant scope: TenantScopedBase adds a NOT NULL ``tenant_id`` that
      every selector and service filters on.
"""

from datetime import date, datetime, timezone
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Date, DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> lowercase str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
        - Lexicographic order of stored values equals numeric UUID order.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime on every backend.

    Guarantees:
        - Naive datetimes are rejected on bind (programming error).
        - Values are converted to UTC before storage.
        - Loaded values always carry ``tzinfo=timezone.utc``.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - datetime maps to UTCDateTime.
        - int maps to BigInteger -- quantities and minor-unit costs.
    """

    type_annotation_map: ClassVar[dict] = {
        datetime: UTCDateTime(),
        date: Date(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TenantScopedBase(Base):
    """
    Abstract base for rows owned by exactly one tenant.

    Contract:
        Every query against a TenantScopedBase table MUST filter on
        ``tenant_id``.  Rows of another tenant are reported as not found.
    """

    __abstract__ = True

    tenant_id: Mapped[PyUUID] = mapped_column(UUIDString(), nullable=False, index=True)


UUID = PyUUID
