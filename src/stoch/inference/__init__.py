"""Byte-level Markov runtime for stoch."""

from .randomness import RandomSource, SeededRandomSource, SystemRandomSource, resolve_random_source
from .stoch import (
    FrequencyTable,
    Generator,
    Stoch,
    StochConfig,
    StochDiagnostics,
    Trainer,
    TransitionModel,
    sample_symbol,
)
from .stoch_common import (
    CounterOverflowError,
    GenerationResult,
    InvalidArgumentError,
    RandomnessUnavailableError,
    StochError,
)

__all__ = [
    "CounterOverflowError",
    "FrequencyTable",
    "GenerationResult",
    "Generator",
    "InvalidArgumentError",
    "RandomSource",
    "RandomnessUnavailableError",
    "SeededRandomSource",
    "Stoch",
    "StochConfig",
    "StochDiagnostics",
    "StochError",
    "SystemRandomSource",
    "Trainer",
    "TransitionModel",
    "resolve_random_source",
    "sample_symbol",
]
