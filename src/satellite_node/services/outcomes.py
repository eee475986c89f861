"""Explicit success/failure values for batch processing.

Per-record and per-dataset work reports its result as :class:`Ok` or
:class:`Err` so that one failing item is collected rather than unwinding the
whole batch.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    reason: str

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Ok[Any], Err]
