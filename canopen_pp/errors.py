"""Error kinds and the ``Result`` value returned by the core operations.

The exception classes name the failure kinds; core operations hand them back
inside a :class:`Result` so callers branch explicitly instead of catching.
``Result.unwrap()`` re-raises for callers that prefer exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from canopen.sdo.exceptions import SdoAbortedError, SdoCommunicationError, SdoError

__all__ = [
    "Cancelled",
    "RangeError",
    "ResponseTimeout",
    "Result",
    "SdoAbortedError",
    "SdoError",
    "TransportError",
]

T = TypeVar("T")


class TransportError(SdoCommunicationError):
    """The CAN channel refused a send or failed while receiving."""


class ResponseTimeout(SdoCommunicationError, TimeoutError):
    """No matching response (or state change) arrived before the deadline."""


class Cancelled(SdoCommunicationError):
    """The shared stop flag was raised while waiting."""


class RangeError(ValueError):
    """Requested target position lies outside the configured travel."""


@dataclass(frozen=True, eq=False)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BaseException) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        if self.error is not None:
            return f"Result(error={self.error!r})"
        return f"Result(value={self.value!r})"
