"""
BaseService -- abstract base for all write-side services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every service in the kernel.  A service receives the caller's
    ``UnitOfWork`` and uses ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell.  Constructed per unit of work
    by the API facade (or a test), never shared across transactions.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back themselves.  Storage's
      ``unit_of_work()`` owns commit and rollback.
    - Time comes from the unit of work's injected Clock.
    - Audit events go through ``UnitOfWork.record_audit`` and are
      delivered only after commit.
"""

from __future__ import annotations

from abc import ABC
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.db.base import Base
from stock_kernel.db.unit_of_work import UnitOfWork
from stock_kernel.domain.audit import (
    AuditAction,
    AuditEntityType,
    AuditEvent,
    AuditSnapshot,
)
from stock_kernel.domain.clock import Clock
from stock_kernel.domain.ports import Actor
from stock_kernel.exceptions import NotFoundError, StaleVersionError

ModelType = TypeVar("ModelType", bound=Base)


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for kernel services.

    Contract:
        Accepts a ``UnitOfWork`` from the caller and persists changes with
        ``session.flush()`` inside the active transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide list/query methods; those live in
          ``stock_kernel/selectors/``.
    """

    def __init__(self, uow: UnitOfWork):
        self.uow = uow
        self.session: Session = uow.session
        self.clock: Clock = uow.clock

    def _now(self) -> datetime:
        return self.clock.now()

    def _lock(self, model: type[ModelType], tenant_id: UUID, entity_id: UUID, entity_type: str):
        """Load one tenant-scoped row ``FOR UPDATE`` or raise NotFoundError.

        ``populate_existing`` refreshes an instance already in the
        identity map so the version read after the lock is current.
        """
        row = self.session.execute(
            select(model)
            .where(model.id == entity_id, model.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError(entity_type, str(entity_id))
        return row

    @staticmethod
    def _check_version(row, expected_version: int | None, entity_type: str) -> None:
        """Optimistic concurrency check against the locked row."""
        if expected_version is not None and row.entity_version != expected_version:
            raise StaleVersionError(
                entity_type, str(row.id), expected_version, row.entity_version,
            )

    def _bump(self, row) -> None:
        """Advance the version and flush.

        The counter is assigned explicitly (``version_id_generator=False``)
        so the guarded ``UPDATE ... WHERE entity_version = v`` is issued
        even when only child rows changed.  A zero-row match raises
        StaleDataError at flush.
        """
        row.entity_version = row.entity_version + 1
        row.updated_at = self._now()
        self.session.flush()

    def _audit(
        self,
        actor: Actor,
        entity_type: AuditEntityType,
        entity_id: UUID,
        action: AuditAction,
        before: AuditSnapshot | None,
        after: AuditSnapshot | None,
        entity_name: str | None = None,
    ) -> None:
        self.uow.record_audit(
            AuditEvent(
                tenant_id=actor.tenant_id,
                actor_user_id=actor.user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                before=before,
                after=after,
                occurred_at=self._now(),
                entity_name=entity_name,
                correlation_id=actor.correlation_id,
            )
        )
