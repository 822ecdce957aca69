from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union

import numpy as np

from .randomness import RandomSource, SystemRandomSource, draw_below, resolve_random_source
from .stoch_common import (
    MAX_COUNT_LIMIT,
    OVERFLOW_POLICIES,
    SUPPORTED_ORDERS,
    SYMBOL_COUNT,
    TERMINATOR,
    CounterOverflowError,
    GenerationResult,
    InvalidArgumentError,
    StochError,
    SymbolsLike,
    ensure_size,
    ensure_symbols,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Helper utilities
# ---------------------------------------------------------------------------


def _check_symbol(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise InvalidArgumentError(f"Symbol must be an integer, got {value!r}")
    symbol = int(value)
    if not 0 <= symbol < SYMBOL_COUNT:
        raise InvalidArgumentError(f"Symbol {symbol} is outside [0, {SYMBOL_COUNT - 1}]")
    return symbol


def _coerce_dataclass_config(
    value: object,
    cls: Type[T],
    factory: Callable[[], T],
) -> T:
    """Return an instance of ``cls`` merging ``value`` with default fields.

    ``Stoch`` accepts a plain mapping so that callers (the CLI and the HTTP
    server) can override only the parameters they care about.
    """

    if value is None:
        return factory()
    if isinstance(value, cls):
        return value
    if isinstance(value, Mapping):
        default = factory()
        init_fields = {item.name for item in dataclasses.fields(cls) if item.init}
        merged = {name: getattr(default, name) for name in init_fields}
        for key, val in value.items():
            if key not in init_fields:
                raise InvalidArgumentError(f"Unknown {cls.__name__} field {key!r}")
            merged[key] = val
        return cls(**merged)  # type: ignore[arg-type]
    raise InvalidArgumentError(f"Expected {cls.__name__} or mapping, got {type(value)!r}")


def _first_reaching(cumulative: np.ndarray, draw: int) -> int:
    """Index of the first cumulative count that reaches past ``draw``.

    ``draw`` lies in ``[0, total)``; searching for ``draw + 1`` with
    ``side="left"`` returns the lowest index whose running sum is ``>= draw + 1``,
    which gives every index a probability proportional to its own count.
    """

    return int(np.searchsorted(cumulative, np.uint64(draw + 1), side="left"))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StochConfig:
    """Construction parameters for a :class:`Stoch` model.

    ``order`` selects between the order-1 transition model (the default) and
    the order-0 histogram, which routes every update through context 0.
    ``count_limit`` caps each context total; ``overflow`` decides whether
    updates past the cap are dropped (``"saturate"``) or rejected
    (``"raise"``).
    """

    order: int = 1
    count_limit: int = MAX_COUNT_LIMIT
    overflow: str = "saturate"

    def __post_init__(self) -> None:
        if self.order not in SUPPORTED_ORDERS:
            raise InvalidArgumentError(f"order must be one of {SUPPORTED_ORDERS}")
        if isinstance(self.count_limit, bool) or not isinstance(self.count_limit, int):
            raise InvalidArgumentError("count_limit must be an integer")
        if not 1 <= self.count_limit <= MAX_COUNT_LIMIT:
            raise InvalidArgumentError(f"count_limit must be in [1, {MAX_COUNT_LIMIT}]")
        if self.overflow not in OVERFLOW_POLICIES:
            raise InvalidArgumentError(f"overflow must be one of {OVERFLOW_POLICIES}")


# ---------------------------------------------------------------------------
# Frequency tables
# ---------------------------------------------------------------------------


class FrequencyTable:
    """Next-symbol counts observed after one context symbol."""

    __slots__ = ("counts", "total", "limit", "_cumulative")

    def __init__(self, limit: int = MAX_COUNT_LIMIT) -> None:
        self.counts = np.zeros(SYMBOL_COUNT, dtype=np.uint64)
        self.total = 0
        self.limit = int(limit)
        self._cumulative: Optional[np.ndarray] = None

    @property
    def room(self) -> int:
        return self.limit - self.total

    def update(self, symbol: int) -> bool:
        """Count one occurrence of ``symbol``; ``False`` when the table is full."""

        symbol = _check_symbol(symbol)
        if self.total >= self.limit:
            return False
        self.counts[symbol] += np.uint64(1)
        self.total += 1
        self._cumulative = None
        return True

    def update_many(self, symbols: np.ndarray) -> int:
        """Count ``symbols`` in order, dropping whatever does not fit."""

        accepted = symbols[: max(self.room, 0)]
        if accepted.size:
            self.counts += np.bincount(accepted, minlength=SYMBOL_COUNT).astype(np.uint64)
            self.total += int(accepted.size)
            self._cumulative = None
        return int(accepted.size)

    def clear(self) -> None:
        self.counts.fill(0)
        self.total = 0
        self._cumulative = None

    def cumulative(self) -> np.ndarray:
        if self._cumulative is None:
            self._cumulative = np.cumsum(self.counts, dtype=np.uint64)
        return self._cumulative

    def sample(self, rng: RandomSource) -> int:
        return sample_symbol(self, rng)

    def consistent(self) -> bool:
        return int(self.counts.sum(dtype=np.uint64)) == self.total

    def __repr__(self) -> str:
        return f"FrequencyTable(total={self.total}, symbols={int(np.count_nonzero(self.counts))})"


def sample_symbol(table: FrequencyTable, rng: RandomSource) -> int:
    """Draw a symbol from ``table`` with probability ``counts[s] / total``.

    The table must not be empty. Symbols are walked in ascending order, so a
    lower symbol wins whenever two running sums tie.
    """

    if table.total <= 0:
        raise InvalidArgumentError("Cannot sample from an empty frequency table")
    draw = draw_below(rng, table.total)
    return _first_reaching(table.cumulative(), draw)


# ---------------------------------------------------------------------------
# Transition model
# ---------------------------------------------------------------------------


class TransitionModel:
    """One :class:`FrequencyTable` per previous symbol plus their grand total."""

    def __init__(self, count_limit: int = MAX_COUNT_LIMIT, overflow: str = "saturate") -> None:
        self.contexts: Tuple[FrequencyTable, ...] = tuple(
            FrequencyTable(count_limit) for _ in range(SYMBOL_COUNT)
        )
        self.grand_total = 0
        self.overflow = overflow
        self.saturated_updates = 0

    def clear_all(self) -> None:
        for table in self.contexts:
            table.clear()
        self.grand_total = 0
        self.saturated_updates = 0

    def train(self, symbol: int, previous_symbol: int) -> bool:
        table = self.contexts[_check_symbol(previous_symbol)]
        symbol = _check_symbol(symbol)
        if table.room <= 0:
            if self.overflow == "raise":
                raise CounterOverflowError(
                    f"Context {int(previous_symbol)} reached its limit of {table.limit}"
                )
            self.saturated_updates += 1
            logger.warning("Context %d saturated; dropped 1 update", int(previous_symbol))
            return False
        table.update(symbol)
        self.grand_total += 1
        return True

    def train_many(self, symbols: np.ndarray, previous: np.ndarray) -> int:
        """Apply ``train(symbols[i], previous[i])`` for every ``i``.

        Under the ``"raise"`` policy every context is checked before any count
        changes, so a rejected chunk leaves the model untouched.
        """

        increments = np.bincount(previous, minlength=SYMBOL_COUNT)
        active = np.flatnonzero(increments)
        if self.overflow == "raise":
            for context in active:
                table = self.contexts[context]
                if int(increments[context]) > table.room:
                    raise CounterOverflowError(
                        f"Context {int(context)} would exceed its limit of {table.limit}"
                    )

        # A stable sort keeps each context's symbols in stream order.
        order = np.argsort(previous, kind="stable")
        grouped = symbols[order]
        ends = np.cumsum(increments)
        accepted = 0
        for context in active:
            end = int(ends[context])
            start = end - int(increments[context])
            taken = self.contexts[context].update_many(grouped[start:end])
            dropped = (end - start) - taken
            if dropped:
                self.saturated_updates += dropped
                logger.warning("Context %d saturated; dropped %d updates", int(context), dropped)
            accepted += taken
        self.grand_total += accepted
        return accepted

    def pick_start_context(self, rng: RandomSource) -> int:
        if self.grand_total == 0:
            return TERMINATOR
        totals = np.fromiter(
            (table.total for table in self.contexts), dtype=np.uint64, count=SYMBOL_COUNT
        )
        draw = draw_below(rng, self.grand_total)
        return _first_reaching(np.cumsum(totals, dtype=np.uint64), draw)

    def as_matrix(self) -> np.ndarray:
        return np.stack([table.counts for table in self.contexts])

    def top_transitions(self, limit: int = 10) -> List[Tuple[int, int, int]]:
        flat = self.as_matrix().ravel()
        nonzero = np.flatnonzero(flat)
        ranked = sorted(nonzero.tolist(), key=lambda index: (-int(flat[index]), index))
        return [
            (index // SYMBOL_COUNT, index % SYMBOL_COUNT, int(flat[index]))
            for index in ranked[: max(limit, 0)]
        ]

    def active_contexts(self) -> int:
        return sum(1 for table in self.contexts if table.total)

    def consistent(self) -> bool:
        if not all(table.consistent() for table in self.contexts):
            return False
        return sum(table.total for table in self.contexts) == self.grand_total


# ---------------------------------------------------------------------------
# Training and generation
# ---------------------------------------------------------------------------


class Trainer:
    """Feeds byte chunks into a :class:`TransitionModel` as one stream."""

    def __init__(self, model: TransitionModel, order: int = 1) -> None:
        self.model = model
        self.order = order
        self.cursor = TERMINATOR
        self.bytes_trained = 0

    def ingest(self, buffer: SymbolsLike) -> int:
        symbols = ensure_symbols(buffer)
        if symbols.size == 0:
            return 0
        if self.order == 0:
            previous = np.zeros_like(symbols)
        else:
            previous = np.empty_like(symbols)
            previous[0] = self.cursor
            previous[1:] = symbols[:-1]
        self.model.train_many(symbols, previous)
        self.cursor = int(symbols[-1])
        self.bytes_trained += int(symbols.size)
        return int(symbols.size)

    def reset(self) -> None:
        self.cursor = TERMINATOR
        self.bytes_trained = 0


class Generator:
    """Chains samples from a :class:`TransitionModel` into an output buffer."""

    def __init__(self, model: TransitionModel, order: int = 1) -> None:
        self.model = model
        self.order = order

    def fill(self, buffer: memoryview, rng: RandomSource) -> int:
        """Fill ``buffer`` and return its logical length.

        Generation stops at the first sampled terminator; that position and
        everything after it is zeroed without further draws.
        """

        size = len(buffer)
        if self.model.grand_total == 0:
            buffer[:] = bytes(size)
            return 0
        context = self.model.pick_start_context(rng)
        for index in range(size):
            table = self.model.contexts[context]
            symbol = sample_symbol(table, rng) if table.total else TERMINATOR
            if symbol == TERMINATOR:
                buffer[index:] = bytes(size - index)
                return index
            buffer[index] = symbol
            context = symbol if self.order else 0
        return size


# ---------------------------------------------------------------------------
# Runtime facade
# ---------------------------------------------------------------------------


@dataclass
class StochDiagnostics:
    chunks_trained: int = 0
    generations: int = 0
    symbols_generated: int = 0
    terminations: int = 0
    last_logical_length: int = 0
    resets: int = 0


@dataclass(eq=False)
class Stoch:
    """Thread-safe owner of a transition model and its training cursor.

    ``train`` is the ingestion port, ``generate``/``generate_into`` the
    generation port and ``reset`` clears everything learned so far. Every
    call holds the instance lock for its whole duration, so a generation
    never observes a half-applied training chunk.
    """

    config: StochConfig = field(default_factory=StochConfig)
    random_source: RandomSource = field(default_factory=SystemRandomSource, repr=False)
    model: TransitionModel = field(init=False, repr=False)
    trainer: Trainer = field(init=False, repr=False)
    generator: Generator = field(init=False, repr=False)
    diagnostics: StochDiagnostics = field(default_factory=StochDiagnostics)
    _lock: threading.RLock = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.config = _coerce_dataclass_config(self.config, StochConfig, StochConfig)
        if not isinstance(self.random_source, RandomSource):
            raise InvalidArgumentError("random_source must provide below(bound)")
        self.model = TransitionModel(self.config.count_limit, self.config.overflow)
        self.trainer = Trainer(self.model, order=self.config.order)
        self.generator = Generator(self.model, order=self.config.order)
        self._lock = threading.RLock()

    @classmethod
    def configure(
        cls,
        params: Optional[Mapping[str, object]] = None,
        *,
        seed: Optional[int] = None,
    ) -> "Stoch":
        """Create a model from plain parameters and an optional seed."""

        config = _coerce_dataclass_config(params, StochConfig, StochConfig)
        return cls(config, resolve_random_source(seed))

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    def train(self, data: SymbolsLike) -> int:
        symbols = ensure_symbols(data)
        with self._lock:
            consumed = self.trainer.ingest(symbols)
            if consumed:
                self.diagnostics.chunks_trained += 1
            logger.debug(
                "Trained %d bytes (grand_total=%d cursor=%d)",
                consumed,
                self.model.grand_total,
                self.trainer.cursor,
            )
        return consumed

    def generate(
        self,
        requested_size: int,
        *,
        random_source: Optional[RandomSource] = None,
    ) -> GenerationResult:
        size = ensure_size(requested_size)
        buffer = bytearray(size)
        logical_length = self.generate_into(buffer, random_source=random_source)
        return GenerationResult(bytes(buffer), logical_length)

    def generate_into(
        self,
        buffer: Union[bytearray, memoryview],
        *,
        random_source: Optional[RandomSource] = None,
    ) -> int:
        view = memoryview(buffer)
        if view.readonly:
            raise InvalidArgumentError("Generation buffer must be writable")
        if not view.c_contiguous:
            raise InvalidArgumentError("Generation buffer must be contiguous")
        if view.ndim != 1 or view.format != "B":
            view = view.cast("B")
        ensure_size(len(view))
        rng = random_source if random_source is not None else self.random_source
        with self._lock:
            logical_length = self.generator.fill(view, rng)
            self.diagnostics.generations += 1
            self.diagnostics.symbols_generated += logical_length
            self.diagnostics.last_logical_length = logical_length
            if logical_length < len(view):
                self.diagnostics.terminations += 1
        logger.debug("Generated %d/%d symbols", logical_length, len(view))
        return logical_length

    def reset(self) -> None:
        with self._lock:
            self.model.clear_all()
            self.trainer.reset()
            resets = self.diagnostics.resets + 1
            self.diagnostics = StochDiagnostics(resets=resets)
        logger.debug("Cleared all learned transitions")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def cursor(self) -> int:
        with self._lock:
            return self.trainer.cursor

    @property
    def grand_total(self) -> int:
        with self._lock:
            return self.model.grand_total

    def counts_matrix(self) -> np.ndarray:
        with self._lock:
            return self.model.as_matrix()

    def top_transitions(self, limit: int = 10) -> List[Tuple[int, int, int]]:
        with self._lock:
            return self.model.top_transitions(limit)

    def diagnostics_record(self) -> Dict[str, object]:
        with self._lock:
            record: Dict[str, object] = dataclasses.asdict(self.diagnostics)
            record.update(
                {
                    "order": self.config.order,
                    "overflow": self.config.overflow,
                    "grand_total": self.model.grand_total,
                    "active_contexts": self.model.active_contexts(),
                    "cursor": self.trainer.cursor,
                    "bytes_trained": self.trainer.bytes_trained,
                    "saturated_updates": self.model.saturated_updates,
                    "consistent": self.model.consistent(),
                }
            )
        return record

    def verify(self) -> None:
        """Raise :class:`StochError` when a count invariant does not hold."""

        with self._lock:
            if not self.model.consistent():
                raise StochError("Frequency totals disagree with their counts")


__all__ = [
    "FrequencyTable",
    "Generator",
    "Stoch",
    "StochConfig",
    "StochDiagnostics",
    "Trainer",
    "TransitionModel",
    "sample_symbol",
]
