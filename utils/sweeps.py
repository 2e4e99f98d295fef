"""Grid, batching and executor helpers shared by the frontier and Monte Carlo runs."""
from __future__ import annotations

from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
import math
from typing import Callable, Iterator, List, Sequence, Type, TypeVar

T = TypeVar("T")
R = TypeVar("R")


def generate_step_values(min_value: float, max_value: float, step: float) -> List[float]:
    """Return ``min_value, min_value + step, ...`` up to and including ``max_value``.

    A small tolerance keeps the end point when floating-point accumulation
    lands just above it.
    """

    if not math.isfinite(step) or step <= 0:
        raise ValueError("step must be a positive finite number")
    if max_value < min_value:
        return []

    count = int(math.floor((max_value - min_value) / step + 1e-9)) + 1
    return [float(round(min_value + idx * step, 9)) for idx in range(count)]


def round_to_step(value: float, step: float, minimum: float) -> float:
    """Round ``value`` to the nearest multiple of ``step`` but never below ``minimum``."""

    return max(minimum, round(value / step) * step)


def _chunked(sequence: Sequence[T], chunk_size: int) -> list[list[T]]:
    """Return a list of evenly sized chunks while preserving order."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive.")

    return [list(sequence[idx: idx + chunk_size]) for idx in range(0, len(sequence), chunk_size)]


def plan_batches(
    items: Sequence[T],
    *,
    max_items: int | None = None,
    on_exceed: str = "raise",
    batch_size: int | None = None,
    label: str = "Candidate",
) -> list[list[T]]:
    """Split ``items`` into batches, enforcing an optional size ceiling.

    ``on_exceed`` controls what happens when ``max_items`` is exceeded:
    ``"raise"`` (default) raises ``ValueError``, ``"return"`` yields no batches
    and ``"batch"`` processes everything in batches of ``batch_size`` (or
    ``max_items``).
    """

    if on_exceed not in {"raise", "return", "batch"}:
        raise ValueError("on_exceed must be 'raise', 'return', or 'batch'.")

    count = len(items)
    if max_items is not None and count > max_items:
        if on_exceed == "return":
            return []
        if on_exceed == "batch":
            return _chunked(items, batch_size or max_items)
        raise ValueError(
            f"{label} count {count} exceeds the limit of {max_items}. "
            "Use on_exceed='batch' or 'return' to change the behavior."
        )
    if batch_size is not None:
        return _chunked(items, batch_size)
    return [list(items)] if items else []


def resolve_executor(concurrency: str | None) -> Type[Executor] | None:
    """Map ``"thread"``/``"process"``/``None`` to an executor class."""

    if concurrency is None:
        return None
    if concurrency not in {"thread", "process"}:
        raise ValueError("concurrency must be 'thread', 'process', or None.")
    return ThreadPoolExecutor if concurrency == "thread" else ProcessPoolExecutor


def iter_batch_results(
    fn: Callable[[T], R],
    batches: Sequence[Sequence[T]],
    *,
    concurrency: str | None = None,
    max_workers: int | None = None,
) -> Iterator[list[R]]:
    """Evaluate ``fn`` over each batch and yield that batch's results in input order.

    Batches are submitted lazily, so a caller that stops iterating (for example
    on cancellation) never starts the remaining work. Process pools require
    ``fn`` and its arguments to be picklable.
    """

    executor_cls = resolve_executor(concurrency)
    for batch in batches:
        if executor_cls is None:
            yield [fn(item) for item in batch]
            continue
        with executor_cls(max_workers=max_workers) as executor:
            yield list(executor.map(fn, batch))


__all__ = [
    "generate_step_values",
    "round_to_step",
    "_chunked",
    "plan_batches",
    "resolve_executor",
    "iter_batch_results",
]
