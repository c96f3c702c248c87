"""
Priority & ordering policy for transfer listings.

Responsibility:
    Defines the one composite sort used wherever transfers are listed or
    queued, and the opaque cursor that continues a listing after its last
    row.

Invariants enforced:
    - Order is ``priority rank`` ascending (URGENT=0 first), then
      ``requested_at`` descending, then ``id`` descending.  The order is
      total: no two distinct transfers compare equal.
    - The order never depends on insertion order or storage engine; the
      selector expresses the same three keys as an explicit ORDER BY.
"""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Protocol, TypeVar
from uuid import UUID

from stock_kernel.domain.values import TransferPriority
from stock_kernel.exceptions import ValidationError

PRIORITY_RANK: dict[TransferPriority, int] = {
    TransferPriority.URGENT: 0,
    TransferPriority.HIGH: 1,
    TransferPriority.NORMAL: 2,
    TransferPriority.LOW: 3,
}


def priority_rank(priority: TransferPriority | str) -> int:
    return PRIORITY_RANK[TransferPriority(priority)]


class Orderable(Protocol):
    priority: TransferPriority
    requested_at: datetime
    id: UUID


T = TypeVar("T", bound=Orderable)


def _ts(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def sort_key(transfer: Orderable) -> tuple[int, float, int]:
    """Ascending sort key reproducing the listing order.

    Lowercase hex UUID strings sort like their integer value, so negating
    ``id.int`` matches the selector's ``id DESC`` on the string column.
    """
    return (
        priority_rank(transfer.priority),
        -_ts(transfer.requested_at),
        -transfer.id.int,
    )


def sort_transfers(transfers: Iterable[T]) -> list[T]:
    return sorted(transfers, key=sort_key)


@dataclass(frozen=True)
class TransferCursor:
    """Position of the last row returned by a listing page."""

    priority_rank: int
    requested_at: datetime
    id: UUID

    @classmethod
    def after(cls, transfer: Orderable) -> TransferCursor:
        return cls(
            priority_rank=priority_rank(transfer.priority),
            requested_at=transfer.requested_at,
            id=transfer.id,
        )

    def encode(self) -> str:
        raw = json.dumps(
            {
                "r": self.priority_rank,
                "t": self.requested_at.isoformat(),
                "i": str(self.id),
            },
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode()).decode()

    @classmethod
    def decode(cls, token: str) -> TransferCursor:
        try:
            data = json.loads(base64.urlsafe_b64decode(token.encode()).decode())
            requested_at = datetime.fromisoformat(data["t"])
            if requested_at.tzinfo is None:
                requested_at = requested_at.replace(tzinfo=timezone.utc)
            return cls(
                priority_rank=int(data["r"]),
                requested_at=requested_at,
                id=UUID(data["i"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError(f"Malformed cursor: {token!r}", field="cursor") from exc


def clamp_limit(limit: int | None, default: int, maximum: int) -> int:
    """Clamp a page size into ``1..maximum``; ``None`` means ``default``."""
    if limit is None:
        return default
    return max(1, min(int(limit), maximum))


@dataclass(frozen=True)
class LedgerCursor:
    """Position in a ledger listing ordered ``occurred_at`` DESC, ``id`` DESC."""

    occurred_at: datetime
    id: UUID

    def encode(self) -> str:
        raw = json.dumps(
            {"t": self.occurred_at.isoformat(), "i": str(self.id)},
            separators=(",", ":"),
        )
        return base64.urlsafe_b64encode(raw.encode()).decode()

    @classmethod
    def decode(cls, token: str) -> LedgerCursor:
        try:
            data = json.loads(base64.urlsafe_b64decode(token.encode()).decode())
            occurred_at = datetime.fromisoformat(data["t"])
            if occurred_at.tzinfo is None:
                occurred_at = occurred_at.replace(tzinfo=timezone.utc)
            return cls(occurred_at=occurred_at, id=UUID(data["i"]))
        except (ValueError, KeyError, TypeError) as exc:
            raise ValidationError(f"Malformed cursor: {token!r}", field="cursor") from exc
