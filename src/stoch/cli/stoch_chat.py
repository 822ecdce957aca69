"""Terminal helper for training and sampling a stoch model.

The CLI builds a :class:`~stoch.inference.stoch.Stoch` instance, trains it on
the files passed with ``--train`` (``-`` reads standard input) and then either
runs a single prompt (``--prompt``) or a small REPL. Every line typed at the
REPL is trained, newline included, and answered with a freshly generated
sample so the chain can be grown interactively. Lines starting with ``:`` are
commands (``:reset``, ``:stats``, ``:quit``).
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from stoch.inference.stoch import Stoch
from stoch.inference.stoch_common import (
    OVERFLOW_POLICIES,
    SUPPORTED_ORDERS,
    GenerationResult,
    StochError,
)

logger = logging.getLogger(__name__)

SEED_ENV_VAR = "STOCH_SEED"
COMMANDS: Sequence[str] = (":reset", ":stats", ":quit")


def _format_float(value: Optional[object]) -> str:
    if value is None:
        return "n/a"
    try:
        return f"{float(value):.2f}"
    except (TypeError, ValueError):  # pragma: no cover - defensive fallback
        return str(value)


def _format_metrics_line(metrics: Mapping[str, object]) -> str:
    return (
        f"[metrics] latency_ms={_format_float(metrics.get('latency_ms'))} "
        f"bytes/sec={_format_float(metrics.get('bytes_per_sec'))} "
        f"trained={metrics.get('trained', 0)} "
        f"logical_length={metrics.get('logical_length', 0)}/{metrics.get('size', 0)} "
        f"grand_total={metrics.get('grand_total', 0)}"
    )


def _format_stats(diagnostics: Mapping[str, object], transitions: Iterable[Sequence[int]]) -> str:
    lines = [
        f"[stats] order={diagnostics.get('order')} grand_total={diagnostics.get('grand_total')} "
        f"active_contexts={diagnostics.get('active_contexts')} cursor={diagnostics.get('cursor')} "
        f"bytes_trained={diagnostics.get('bytes_trained')} "
        f"saturated={diagnostics.get('saturated_updates')} "
        f"generations={diagnostics.get('generations')}"
    ]
    for previous, following, count in transitions:
        lines.append(f"  {_describe_symbol(previous)} -> {_describe_symbol(following)}: {count}")
    return "\n".join(lines)


def _describe_symbol(symbol: int) -> str:
    char = chr(symbol)
    if char.isprintable() and symbol < 0x7F:
        return repr(char)
    return f"0x{symbol:02x}"


def _decode_text(value: bytes) -> str:
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("utf-8", errors="replace")


@dataclass
class TurnRecord:
    prompt: str
    trained: int
    result: GenerationResult
    response_text: str
    metrics_payload: Dict[str, object]


@dataclass
class TranscriptLogger:
    """Persist CLI sessions as JSON lines for later inspection."""

    path: Path

    def __post_init__(self) -> None:
        self.path = self.path.expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def record_event(self, message: str, *, role: str = "system", **extra: object) -> None:
        payload: Dict[str, object] = {"type": "event", "role": role, "message": message}
        if extra:
            payload.update(extra)
        self._write(payload)

    def record_turn(self, turn: TurnRecord) -> None:
        self._write(
            {
                "type": "turn",
                "prompt": turn.prompt,
                "trained": turn.trained,
                "response_text": turn.response_text,
                "response_hex": turn.result.payload.hex(),
                "logical_length": turn.result.logical_length,
                "metrics": dict(turn.metrics_payload),
            }
        )

    def _write(self, payload: Dict[str, object]) -> None:
        record = {"timestamp": datetime.now(UTC).isoformat(), **payload}
        with self.path.open("a", encoding="utf-8") as fh:
            json.dump(record, fh, ensure_ascii=False, sort_keys=True)
            fh.write("\n")


def _resolve_seed(value: Optional[int]) -> Optional[int]:
    if value is not None:
        return value
    env_value = os.environ.get(SEED_ENV_VAR)
    if not env_value:
        return None
    try:
        return int(env_value)
    except ValueError as exc:
        raise SystemExit(f"{SEED_ENV_VAR} must be an integer, got {env_value!r}") from exc


def _train_sources(model: Stoch, sources: Iterable[str]) -> List[str]:
    messages: List[str] = []
    for source in sources:
        if source == "-":
            data = sys.stdin.buffer.read()
            label = "<stdin>"
        else:
            path = Path(source).expanduser()
            if not path.is_file():
                raise FileNotFoundError(f"Training file {path} not found")
            data = path.read_bytes()
            label = str(path)
        consumed = model.train(data)
        logger.info("Trained %d bytes from %s", consumed, label)
        messages.append(f"Trained {consumed} bytes from {label}")
    return messages


def _execute_turn(model: Stoch, prompt: str, *, size: int, train: bool = True) -> TurnRecord:
    start = time.perf_counter()
    trained = model.train(prompt + "\n") if train else 0
    result = model.generate(size)
    elapsed = max(time.perf_counter() - start, 1e-6)

    metrics_payload: Dict[str, object] = {
        "latency_ms": elapsed * 1000.0,
        "bytes_per_sec": result.logical_length / elapsed,
        "trained": trained,
        "size": size,
        "logical_length": result.logical_length,
        "grand_total": model.grand_total,
    }
    return TurnRecord(
        prompt=prompt,
        trained=trained,
        result=result,
        response_text=_decode_text(result.payload),
        metrics_payload=metrics_payload,
    )


def _run_turn(
    model: Stoch,
    prompt: str,
    *,
    size: int,
    samples: int = 1,
    metrics_mode: str = "off",
    transcript_logger: Optional[TranscriptLogger] = None,
) -> List[TurnRecord]:
    turns: List[TurnRecord] = []
    for index in range(samples):
        # Only the first sample of a prompt trains the model.
        turn = _execute_turn(model, prompt, size=size, train=index == 0)
        print(f"stoch: {turn.response_text}")
        if metrics_mode == "plain":
            print(_format_metrics_line(turn.metrics_payload))
        elif metrics_mode == "json":
            print("[metrics] " + json.dumps(turn.metrics_payload, sort_keys=True))
        if transcript_logger:
            transcript_logger.record_turn(turn)
        turns.append(turn)
    return turns


def _run_command(model: Stoch, command: str) -> bool:
    """Handle a REPL command; ``False`` ends the session."""

    if command == ":quit":
        return False
    if command == ":reset":
        model.reset()
        print("Model reset.")
    elif command == ":stats":
        print(_format_stats(model.diagnostics_record(), model.top_transitions(5)))
    else:
        print(f"Unknown command {command!r}. Available: {', '.join(COMMANDS)}")
    return True


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Train a byte-level Markov model and sample from it"
    )
    parser.add_argument(
        "--train",
        action="append",
        default=[],
        metavar="FILE",
        help="Train on FILE before sampling ('-' reads stdin); repeatable",
    )
    parser.add_argument(
        "--prompt",
        type=str,
        help="Train on this text, print samples and exit",
    )
    parser.add_argument(
        "--size",
        type=int,
        default=80,
        help="Number of bytes requested per sample",
    )
    parser.add_argument(
        "--samples",
        type=int,
        default=1,
        help="Samples printed per prompt",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help=f"Seed for reproducible samples (defaults to ${SEED_ENV_VAR})",
    )
    parser.add_argument(
        "--order",
        type=int,
        choices=SUPPORTED_ORDERS,
        default=1,
        help="Markov order: 1 for byte transitions, 0 for a plain histogram",
    )
    parser.add_argument(
        "--overflow",
        choices=OVERFLOW_POLICIES,
        default="saturate",
        help="What to do when a context counter reaches its limit",
    )
    parser.add_argument(
        "--transcript",
        type=str,
        help="Record a JSONL transcript of the session to the given path",
    )
    parser.add_argument(
        "--metrics",
        choices=("off", "plain", "json"),
        default="off",
        help="Render per-sample metrics after each response",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.size < 1:
        parser.error("--size must be >= 1")
    if args.samples < 1:
        parser.error("--samples must be >= 1")
    seed = _resolve_seed(args.seed)
    if seed is not None and seed < 0:
        parser.error(f"--seed (or ${SEED_ENV_VAR}) must be >= 0, got {seed}")
    if args.verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.DEBUG)

    model = Stoch.configure(
        {"order": args.order, "overflow": args.overflow},
        seed=seed,
    )
    transcript_logger = TranscriptLogger(Path(args.transcript)) if args.transcript else None

    try:
        load_messages = _train_sources(model, args.train)
    except (OSError, StochError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    if transcript_logger:
        for message in load_messages:
            transcript_logger.record_event(message)

    run = dict(
        size=args.size,
        samples=args.samples,
        metrics_mode=args.metrics,
        transcript_logger=transcript_logger,
    )
    for line in load_messages:
        print(line)
    try:
        if args.prompt is not None:
            _run_turn(model, args.prompt, **run)
            return 0

        print("Type text to train and sample (Ctrl+C or :quit to exit).")
        while True:
            try:
                prompt = input("You: ")
            except EOFError:
                break
            if not prompt:
                continue
            if prompt.startswith(":"):
                if not _run_command(model, prompt.strip()):
                    break
                if transcript_logger:
                    transcript_logger.record_event(f"command {prompt.strip()}", role="user")
                continue
            _run_turn(model, prompt, **run)
    except KeyboardInterrupt:
        print("\nExiting.")
        if transcript_logger:
            transcript_logger.record_event("Session interrupted")
    except StochError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
