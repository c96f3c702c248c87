"""
Explicit "field supplied" wrapper for partial updates.

Responsibility:
    Distinguishes three states for every updatable field of a patch:
    not supplied (``UNSET``), explicitly cleared (``None``) and set to a
    value.  ``None`` alone cannot express the difference between
    "leave alone" and "clear".

Usage::

    patch = ApprovalRulePatch(description=None)      # clear description
    patch = ApprovalRulePatch(name="Large orders")   # rename only
    if is_set(patch.description):
        model.description = patch.description
"""

from __future__ import annotations

from typing import Any, Final, TypeVar, Union


class _UnsetType:
    """Singleton marker for a field that was not supplied."""

    _instance: "_UnsetType | None" = None

    def __new__(cls) -> "_UnsetType":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_UnsetType":
        return self

    def __deepcopy__(self, memo: dict) -> "_UnsetType":
        return self


UNSET: Final = _UnsetType()

T = TypeVar("T")

Patchable = Union[T, _UnsetType]


def is_set(value: Any) -> bool:
    """True when the field was supplied, including an explicit ``None``."""
    return value is not UNSET


def apply_patch(target: Any, patch: Any, fields: tuple[str, ...]) -> list[str]:
    """Copy every supplied field of ``patch`` onto ``target``.

    Returns the names of the fields whose value actually changed.
    Enum values are stored by ``.value`` when the target attribute is a
    plain string column.
    """
    changed: list[str] = []
    for name in fields:
        value = getattr(patch, name)
        if not is_set(value):
            continue
        stored = value.value if hasattr(value, "value") else value
        if getattr(target, name) != stored:
            setattr(target, name, stored)
            changed.append(name)
    return changed
