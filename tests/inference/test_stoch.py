from __future__ import annotations

import collections
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from stoch.inference.randomness import SeededRandomSource
from stoch.inference.stoch import (
    FrequencyTable,
    Stoch,
    StochConfig,
    TransitionModel,
    sample_symbol,
)
from stoch.inference.stoch_common import (
    MAX_COUNT_LIMIT,
    CounterOverflowError,
    InvalidArgumentError,
    RandomnessUnavailableError,
    StochError,
)
from tests.randomness_fixtures import (
    ConstantRandomSource,
    FailingRandomSource,
    OutOfRangeRandomSource,
    ScriptedRandomSource,
)


def _table(counts: dict[int, int]) -> FrequencyTable:
    table = FrequencyTable()
    for symbol, count in counts.items():
        for _ in range(count):
            table.update(symbol)
    return table


def _assert_consistent(model: Stoch) -> None:
    contexts = model.model.contexts
    for table in contexts:
        assert int(table.counts.sum()) == table.total
    assert sum(table.total for table in contexts) == model.grand_total


# ---------------------------------------------------------------------------
# Frequency tables and sampling
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("symbol", [-1, 256, 1000])
def test_frequency_table_rejects_out_of_range_symbols(symbol: int) -> None:
    table = FrequencyTable()

    with pytest.raises(InvalidArgumentError):
        table.update(symbol)

    assert table.total == 0
    assert not table.counts.any()


def test_frequency_table_clear_resets_counts() -> None:
    table = _table({1: 2, 200: 1})

    table.clear()

    assert table.total == 0
    assert not table.counts.any()


def test_sampler_yields_exact_proportions_over_every_draw() -> None:
    table = _table({65: 3, 66: 1})
    source = ScriptedRandomSource(range(4))

    drawn = [sample_symbol(table, source) for _ in range(4)]

    assert drawn == [65, 65, 65, 66]
    assert source.bounds == [4, 4, 4, 4]


def test_sampler_never_returns_a_zero_count_symbol() -> None:
    table = _table({200: 5})
    source = ScriptedRandomSource(range(5))

    assert {sample_symbol(table, source) for _ in range(5)} == {200}


def test_sampler_walks_symbols_in_ascending_order() -> None:
    table = _table({20: 1, 10: 1})

    assert sample_symbol(table, ConstantRandomSource(0)) == 10
    assert sample_symbol(table, ConstantRandomSource(1)) == 20


def test_sampler_distribution_converges() -> None:
    table = _table({ord("A"): 3, ord("B"): 1})
    source = SeededRandomSource(7)

    tally = collections.Counter(sample_symbol(table, source) for _ in range(20000))

    assert set(tally) == {ord("A"), ord("B")}
    assert tally[ord("A")] / 20000 == pytest.approx(0.75, abs=0.02)
    assert tally[ord("B")] / 20000 == pytest.approx(0.25, abs=0.02)


def test_sampler_rejects_empty_table() -> None:
    with pytest.raises(InvalidArgumentError):
        sample_symbol(FrequencyTable(), ConstantRandomSource(0))


# ---------------------------------------------------------------------------
# Transition model
# ---------------------------------------------------------------------------


def test_transition_model_routes_updates_by_previous_symbol() -> None:
    model = TransitionModel()

    assert model.train(98, 97)
    assert model.train(98, 97)

    assert model.contexts[97].counts[98] == 2
    assert model.contexts[97].total == 2
    assert model.grand_total == 2
    assert model.consistent()


def test_transition_model_rejects_invalid_context() -> None:
    model = TransitionModel()

    with pytest.raises(InvalidArgumentError):
        model.train(1, 256)

    assert model.grand_total == 0


def test_start_context_defaults_to_zero_when_empty() -> None:
    source = ConstantRandomSource(5)

    assert TransitionModel().pick_start_context(source) == 0
    assert source.calls == 0


def test_start_context_is_weighted_by_context_totals() -> None:
    model = TransitionModel()
    model.train(1, 5)
    for _ in range(3):
        model.train(1, 9)
    source = ScriptedRandomSource(range(4))

    picks = [model.pick_start_context(source) for _ in range(4)]

    assert picks == [5, 9, 9, 9]


# ---------------------------------------------------------------------------
# Ingestion port
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "payload",
    [b"ab", "ab", bytearray(b"ab"), memoryview(b"ab"), [97, 98]],
)
def test_train_accepts_common_inputs(payload) -> None:
    model = Stoch()

    assert model.train(payload) == 2

    matrix = model.counts_matrix()
    assert matrix[0, 97] == 1
    assert matrix[97, 98] == 1
    assert model.cursor == 98


def test_train_empty_input_is_noop() -> None:
    model = Stoch()

    assert model.train(b"") == 0
    assert model.grand_total == 0
    assert model.diagnostics_record()["chunks_trained"] == 0


def test_train_rejects_out_of_range_values_atomically() -> None:
    model = Stoch()
    model.train(b"xy")
    before = model.counts_matrix()

    with pytest.raises(InvalidArgumentError):
        model.train([1, 2, 300])

    assert np.array_equal(model.counts_matrix(), before)
    assert model.cursor == ord("y")
    assert model.grand_total == 2


def test_train_rejects_unsupported_types() -> None:
    with pytest.raises(InvalidArgumentError):
        Stoch().train(3.5)  # type: ignore[arg-type]


def test_cursor_links_separate_chunks() -> None:
    model = Stoch()

    model.train(b"a")
    model.train(b"b")

    matrix = model.counts_matrix()
    assert matrix[0, ord("a")] == 1
    assert matrix[ord("a"), ord("b")] == 1


@pytest.mark.parametrize("split", [0, 1, 5, 11, 17])
def test_training_is_associative_across_chunks(split: int) -> None:
    stream = b"hello world\x00again"
    whole = Stoch()
    whole.train(stream)
    chunked = Stoch()

    chunked.train(stream[:split])
    chunked.train(stream[split:])

    assert np.array_equal(whole.counts_matrix(), chunked.counts_matrix())
    assert whole.cursor == chunked.cursor
    assert whole.grand_total == chunked.grand_total


def test_invariants_hold_after_arbitrary_training() -> None:
    rng = np.random.default_rng(1234)
    model = Stoch()

    for _ in range(50):
        length = int(rng.integers(0, 200))
        chunk = rng.integers(0, 256, size=length, dtype=np.uint8).tobytes()
        model.train(chunk)
        _assert_consistent(model)

    model.verify()
    assert model.diagnostics_record()["consistent"] is True


def test_top_transitions_orders_by_count_then_position() -> None:
    model = Stoch()
    model.train(b"abab")

    assert model.top_transitions(2) == [(97, 98, 2), (0, 97, 1)]


# ---------------------------------------------------------------------------
# Generation port
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("size", [1, 5, 64])
def test_fresh_model_generates_zero_padding(size: int) -> None:
    source = ConstantRandomSource(0)
    result = Stoch(random_source=source).generate(size)

    assert result.data == bytes(size)
    assert result.logical_length == 0
    assert source.calls == 0


@pytest.mark.parametrize("size", [0, -1, 1.5, True, "3"])
def test_generate_rejects_invalid_sizes(size) -> None:
    model = Stoch()

    with pytest.raises(InvalidArgumentError) as excinfo:
        model.generate(size)

    assert isinstance(excinfo.value, ValueError)


def test_terminated_chain_emits_symbol_then_terminator() -> None:
    model = Stoch(random_source=ConstantRandomSource(0))
    model.train(b"A\x00" * 10)

    result = model.generate(8)

    assert result.data == b"A" + bytes(7)
    assert result.logical_length == 1
    assert result.payload == b"A"
    assert result.terminated


def test_terminated_chain_is_deterministic_for_a_seed() -> None:
    model = Stoch()
    model.train(b"A\x00" * 10)

    first = model.generate(8, random_source=SeededRandomSource(99))
    second = model.generate(8, random_source=SeededRandomSource(99))

    assert first == second
    assert first.data in (b"A" + bytes(7), bytes(8))


def test_generation_stops_drawing_after_terminator() -> None:
    source = ScriptedRandomSource([0, 0, 0])
    model = Stoch(random_source=source)
    model.train(b"A\x00")

    result = model.generate(10)

    assert result.data == b"A" + bytes(9)
    assert source.bounds == [2, 1, 1]


def test_empty_context_ends_generation_without_sampling() -> None:
    source = ConstantRandomSource(0)
    model = Stoch(random_source=source)
    model.train(b"ab")

    result = model.generate(6)

    assert result.data == b"ab" + bytes(4)
    assert result.logical_length == 2
    # One draw for the start context, one per sampled symbol.
    assert source.calls == 3


def test_generation_without_terminator_fills_the_request() -> None:
    model = Stoch(random_source=ConstantRandomSource(0))
    model.train(b"aaaa")

    result = model.generate(16)

    assert result.data == b"a" * 16
    assert result.logical_length == 16
    assert not result.terminated


def test_generate_one_symbol() -> None:
    model = Stoch(random_source=SeededRandomSource(3))
    model.train(b"abc\x00abd\x00")

    result = model.generate(1)

    assert len(result.data) == 1
    assert result.logical_length in (0, 1)


def test_generate_does_not_mutate_model() -> None:
    model = Stoch()
    model.train(b"the quick brown fox jumps over the lazy dog\x00")
    before = model.counts_matrix()
    cursor = model.cursor

    first = model.generate(64, random_source=SeededRandomSource(2024))
    second = model.generate(64, random_source=SeededRandomSource(2024))

    assert first == second
    assert np.array_equal(model.counts_matrix(), before)
    assert model.cursor == cursor


def test_generate_into_fills_caller_buffer() -> None:
    model = Stoch(random_source=ConstantRandomSource(0))
    model.train(b"xy")
    buffer = bytearray(b"\xff" * 6)

    logical_length = model.generate_into(buffer)

    assert logical_length == 2
    assert bytes(buffer) == b"xy" + bytes(4)


@pytest.mark.parametrize("buffer", [b"\x00\x00", bytearray()])
def test_generate_into_rejects_unusable_buffers(buffer) -> None:
    with pytest.raises(InvalidArgumentError):
        Stoch().generate_into(buffer)


def test_train_rejects_fractional_and_text_items_atomically() -> None:
    model = Stoch()
    model.train(b"q")

    for payload in ([-0.5, 65.9], ["x"]):
        with pytest.raises(InvalidArgumentError):
            model.train(payload)

    assert model.grand_total == 1
    assert model.cursor == ord("q")


def test_generate_into_rejects_strided_buffers() -> None:
    backing = bytearray(8)

    with pytest.raises(InvalidArgumentError, match="contiguous"):
        Stoch().generate_into(memoryview(backing)[::2])

    assert backing == bytearray(8)


@pytest.mark.parametrize("source", [FailingRandomSource(), OutOfRangeRandomSource()])
def test_randomness_failure_surfaces_without_mutation(source) -> None:
    model = Stoch(random_source=source)
    model.train(b"hello")
    before = model.counts_matrix()

    with pytest.raises(RandomnessUnavailableError) as excinfo:
        model.generate(4)

    assert isinstance(excinfo.value, OSError)
    assert np.array_equal(model.counts_matrix(), before)
    assert model.diagnostics_record()["generations"] == 0


# ---------------------------------------------------------------------------
# Reset
# ---------------------------------------------------------------------------


def test_reset_clears_counts_and_cursor() -> None:
    model = Stoch(random_source=ConstantRandomSource(0))
    model.train(b"hello")

    model.reset()

    assert model.grand_total == 0
    assert model.cursor == 0
    assert not model.counts_matrix().any()
    assert model.generate(4).data == bytes(4)


def test_reset_is_idempotent() -> None:
    once = Stoch()
    once.train(b"abc")
    once.reset()
    twice = Stoch()
    twice.train(b"abc")

    twice.reset()
    twice.reset()

    assert np.array_equal(once.counts_matrix(), twice.counts_matrix())
    assert once.cursor == twice.cursor == 0
    assert twice.diagnostics_record()["resets"] == 2


# ---------------------------------------------------------------------------
# Configuration and counter limits
# ---------------------------------------------------------------------------


def test_order_zero_uses_a_single_histogram() -> None:
    model = Stoch(StochConfig(order=0), ConstantRandomSource(0))
    model.train(b"ba")

    assert model.model.active_contexts() == 1
    result = model.generate(3)

    assert result.data == b"aaa"
    assert result.logical_length == 3


def test_saturating_counters_drop_excess_updates() -> None:
    model = Stoch(StochConfig(count_limit=3))

    model.train(b"aaaaa")

    record = model.diagnostics_record()
    assert model.counts_matrix()[ord("a"), ord("a")] == 3
    assert record["saturated_updates"] == 1
    assert model.grand_total == 4
    assert model.cursor == ord("a")
    _assert_consistent(model)


def test_raising_counters_reject_whole_chunk() -> None:
    model = Stoch({"count_limit": 3, "overflow": "raise"})
    model.train(b"aaa")
    before = model.counts_matrix()

    with pytest.raises(CounterOverflowError):
        model.train(b"baa")

    assert np.array_equal(model.counts_matrix(), before)
    assert model.grand_total == 3
    assert isinstance(CounterOverflowError("x"), StochError)


@pytest.mark.parametrize(
    "params",
    [
        {"order": 2},
        {"count_limit": 0},
        {"count_limit": MAX_COUNT_LIMIT + 1},
        {"overflow": "wrap"},
        {"unknown": 1},
    ],
)
def test_invalid_configuration_is_rejected(params) -> None:
    with pytest.raises(InvalidArgumentError):
        Stoch.configure(params)


def test_configure_with_seed_is_reproducible() -> None:
    left = Stoch.configure(seed=5)
    right = Stoch.configure(seed=5)
    for model in (left, right):
        model.train(b"mississippi\x00")

    assert left.generate(32) == right.generate(32)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_training_and_generation_keep_invariants() -> None:
    model = Stoch(random_source=SeededRandomSource(11))
    chunks = [bytes([value % 256]) * 64 + b"stochastic" for value in range(64)]

    def generate(_: int) -> int:
        return model.generate(32).logical_length

    with ThreadPoolExecutor(max_workers=6) as pool:
        trained = list(pool.map(model.train, chunks))
        lengths = list(pool.map(generate, range(64)))

    assert sum(trained) == model.grand_total == sum(len(chunk) for chunk in chunks)
    assert all(0 <= length <= 32 for length in lengths)
    model.verify()
