"""
Standard response envelope.

Every facade call returns ``Envelope(success, data, error)``.  On failure
``error`` is an ``ErrorBody`` built from the typed kernel exception;
``to_dict()`` renders the camelCase wire shape the HTTP layer serves
unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, is_dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import UUID

from stock_kernel.exceptions import StockKernelError

T = TypeVar("T")


def _to_wire(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_wire(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _to_wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_wire(v) for v in value]
    return value


@dataclass(frozen=True)
class ErrorBody:
    error_code: str
    http_status_code: int
    user_facing_message: str
    developer_message: str
    correlation_id: str | None = None

    @classmethod
    def from_exception(cls, exc: StockKernelError, correlation_id: str | None) -> ErrorBody:
        return cls(
            error_code=exc.code,
            http_status_code=exc.http_status,
            user_facing_message=exc.user_message,
            developer_message=str(exc),
            correlation_id=correlation_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "errorCode": self.error_code,
            "httpStatusCode": self.http_status_code,
            "userFacingMessage": self.user_facing_message,
            "developerMessage": self.developer_message,
            "correlationId": self.correlation_id,
        }


@dataclass(frozen=True)
class Envelope(Generic[T]):
    success: bool
    data: T | None = None
    error: ErrorBody | None = None

    @classmethod
    def ok(cls, data: T) -> Envelope[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ErrorBody) -> Envelope[T]:
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return ``data`` or raise when the call failed."""
        if not self.success:
            raise RuntimeError(
                f"{self.error.error_code}: {self.error.developer_message}"
            )
        return self.data

    def to_dict(self) -> dict[str, Any]:
        """Wire form.  Payload field names keep their snake_case."""
        return {
            "success": self.success,
            "data": _to_wire(self.data),
            "error": self.error.to_dict() if self.error is not None else None,
        }
