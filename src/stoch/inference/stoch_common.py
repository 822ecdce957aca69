"""Shared stoch runtime helpers used across the CLI and the HTTP transport."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple, Union

import numpy as np

SYMBOL_COUNT = 256
TERMINATOR = 0
# Largest per-context total that keeps the grand total inside 64 bits.
MAX_COUNT_LIMIT = (2**64 - 1) // SYMBOL_COUNT
OVERFLOW_POLICIES: Tuple[str, ...] = ("saturate", "raise")
SUPPORTED_ORDERS: Tuple[int, ...] = (0, 1)

SymbolsLike = Union[str, bytes, bytearray, memoryview, Iterable[int]]


class StochError(RuntimeError):
    """Base class for failures raised by the stoch runtime."""


class InvalidArgumentError(StochError, ValueError):
    """Raised when a port receives a value it cannot accept."""


class RandomnessUnavailableError(StochError, OSError):
    """Raised when the randomness source cannot supply a usable value."""


class CounterOverflowError(StochError):
    """Raised when training would push a context past its counter limit."""


@dataclass(frozen=True)
class GenerationResult:
    """Output of a single generation request.

    ``data`` always has the requested length. Only the first
    ``logical_length`` bytes are meaningful; the rest is zero padding that
    starts at the sampled terminator.
    """

    data: bytes
    logical_length: int

    @property
    def payload(self) -> bytes:
        return self.data[: self.logical_length]

    @property
    def terminated(self) -> bool:
        return self.logical_length < len(self.data)

    def text(self, errors: str = "replace") -> str:
        return self.payload.decode("utf-8", errors=errors)


def ensure_symbols(value: SymbolsLike) -> np.ndarray:
    """Coerce the provided value into a ``uint8`` symbol array.

    Byte-like inputs are taken as-is and strings are UTF-8 encoded. Iterables
    of integers are range checked rather than masked so that a wider input
    type cannot silently corrupt the counts.
    """

    if isinstance(value, (bytes, bytearray)):
        return np.frombuffer(bytes(value), dtype=np.uint8)
    if isinstance(value, memoryview):
        return np.frombuffer(value.tobytes(), dtype=np.uint8)
    if isinstance(value, str):
        return np.frombuffer(value.encode("utf-8"), dtype=np.uint8)
    if isinstance(value, np.ndarray) and value.dtype == np.uint8:
        return value.reshape(-1)
    try:
        parts = list(value)
    except TypeError as exc:
        raise InvalidArgumentError(
            f"Unsupported training input of type {type(value).__name__}"
        ) from exc
    items = []
    for position, part in enumerate(parts):
        if isinstance(part, bool) or not isinstance(part, (int, np.integer)):
            raise InvalidArgumentError(
                f"Symbol at position {position} must be an integer, got {part!r}"
            )
        item = int(part)
        items.append(item)
        if not 0 <= item < SYMBOL_COUNT:
            raise InvalidArgumentError(
                f"Symbol {item} at position {position} is outside [0, {SYMBOL_COUNT - 1}]"
            )
    return np.asarray(items, dtype=np.uint8)


def ensure_size(value: object) -> int:
    """Validate a requested generation size."""

    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise InvalidArgumentError(f"Requested size must be an integer, got {value!r}")
    size = int(value)
    if size < 1:
        raise InvalidArgumentError(f"Requested size must be >= 1, got {size}")
    return size


__all__ = [
    "CounterOverflowError",
    "GenerationResult",
    "InvalidArgumentError",
    "MAX_COUNT_LIMIT",
    "OVERFLOW_POLICIES",
    "RandomnessUnavailableError",
    "SUPPORTED_ORDERS",
    "SYMBOL_COUNT",
    "StochError",
    "SymbolsLike",
    "TERMINATOR",
    "ensure_size",
    "ensure_symbols",
]
