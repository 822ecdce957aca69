"""stoch: learn byte transitions from a stream and generate stochastic output."""

from __future__ import annotations

from .inference import (
    GenerationResult,
    InvalidArgumentError,
    RandomnessUnavailableError,
    Stoch,
    StochConfig,
    StochError,
)

__all__ = [
    "GenerationResult",
    "InvalidArgumentError",
    "RandomnessUnavailableError",
    "Stoch",
    "StochConfig",
    "StochError",
]
