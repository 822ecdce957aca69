"""Randomness sources injected into the stoch sampler.

The sampler only needs one capability: a uniform integer below a bound.
Keeping that behind a small protocol lets tests hand in scripted draws while
production code reads operating system entropy.
"""

from __future__ import annotations

import secrets
import threading
from typing import Optional, Protocol, runtime_checkable

import numpy as np

from .stoch_common import InvalidArgumentError, RandomnessUnavailableError


@runtime_checkable
class RandomSource(Protocol):
    """Supplier of uniform integers in ``[0, bound)``."""

    def below(self, bound: int) -> int:  # pragma: no cover - protocol
        ...


class SystemRandomSource:
    """Entropy from the operating system, safe to share between threads."""

    def below(self, bound: int) -> int:
        if bound <= 0:
            raise InvalidArgumentError("bound must be positive")
        try:
            return secrets.randbelow(bound)
        except OSError as exc:
            raise RandomnessUnavailableError("System entropy source failed") from exc


class SeededRandomSource:
    """Reproducible draws backed by :class:`numpy.random.Generator`."""

    def __init__(self, seed: Optional[int] = None) -> None:
        if seed is not None and (
            isinstance(seed, bool) or not isinstance(seed, (int, np.integer)) or seed < 0
        ):
            raise InvalidArgumentError(f"seed must be a non-negative integer, got {seed!r}")
        self.seed = seed
        self._generator = np.random.default_rng(seed)
        self._lock = threading.Lock()

    def below(self, bound: int) -> int:
        if bound <= 0:
            raise InvalidArgumentError("bound must be positive")
        with self._lock:
            return int(self._generator.integers(0, bound, dtype=np.uint64))


def resolve_random_source(seed: Optional[int] = None) -> RandomSource:
    """Return a seeded source when ``seed`` is given, system entropy otherwise."""

    if seed is None:
        return SystemRandomSource()
    return SeededRandomSource(seed)


def draw_below(source: RandomSource, bound: int) -> int:
    """Draw from ``source`` and validate the result.

    Any ``OSError`` from the source and any value outside ``[0, bound)`` are
    reported as :class:`RandomnessUnavailableError`.
    """

    try:
        value = source.below(bound)
    except RandomnessUnavailableError:
        raise
    except OSError as exc:
        raise RandomnessUnavailableError(f"Randomness source failed: {exc}") from exc
    value = int(value)
    if not 0 <= value < bound:
        raise RandomnessUnavailableError(
            f"Randomness source returned {value}, expected a value in [0, {bound})"
        )
    return value


__all__ = [
    "RandomSource",
    "SeededRandomSource",
    "SystemRandomSource",
    "draw_below",
    "resolve_random_source",
]
