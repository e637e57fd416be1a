"""Result type for optional pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from regintel.errors import DegradedCapabilityError


T = TypeVar("T")


@dataclass(frozen=True)
class CapabilityResult(Generic[T]):
    """Either a value or a `DegradedCapabilityError`, never both.

    Callers decide what a degraded result means; the state machine logs it
    and moves on.
    """

    value: Optional[T] = None
    error: Optional[DegradedCapabilityError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "CapabilityResult[T]":
        return cls(value=value)

    @classmethod
    def degraded(cls, capability: str, message: str) -> "CapabilityResult[T]":
        return cls(error=DegradedCapabilityError(capability, message))
