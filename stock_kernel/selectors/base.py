"""
Module: stock_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
    Selectors are the "Q" side of the service/selector split: structured
    read access to transfers, rules, templates and the inventory ledger
    without mutation capability.
Architecture position: Kernel > Selectors.  May import from db/, models/
    and domain/ value objects.  MUST NOT import from services/ or api/.

Invariants enforced:
    - Read-only access: selectors accept a Session from the caller and
      never call ``add``, ``delete``, ``flush`` or ``commit``.
    - DTO return convention: selectors return frozen dataclasses, never
      ORM instances.
    - Tenant scope: every query filters on the caller's ``tenant_id``.
      Rows of another tenant are reported as not found.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from stock_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs.  They MUST NOT mutate any data.

    Non-goals:
        - BaseSelector does NOT define any query methods.
    """

    def __init__(self, session: Session):
        self.session = session
