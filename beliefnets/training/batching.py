"""Batch and epoch scheduling.

Batches follow dataset order; callers shuffle beforehand if they need to. The
final partial batch is always yielded.
"""

from __future__ import annotations

import itertools
import math
from collections.abc import Iterator as IteratorABC
from dataclasses import dataclass
from typing import Iterable, Iterator, List

import numpy as np

from ..core.types import Array, Batch


def count_batches(n_samples: int, batch_size: int) -> int:
    """Number of batches needed to cover ``n_samples``."""

    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    return math.ceil(n_samples / batch_size)


def batch_slices(n_samples: int, batch_size: int) -> List[slice]:
    """Contiguous slices partitioning ``range(n_samples)``."""

    return [
        slice(start, min(start + batch_size, n_samples))
        for start in range(0, n_samples, batch_size)
    ]


def iter_batches(
    inputs: Array, targets: Array | None, batch_size: int
) -> Iterator[Batch]:
    """Yield in-order batches of ``inputs`` (and ``targets`` when given)."""

    for part in batch_slices(inputs.shape[0], batch_size):
        yield Batch(
            inputs=inputs[part],
            targets=None if targets is None else targets[part],
        )


def is_single_pass(data: Iterable) -> bool:
    """True for iterators that can only be consumed once."""

    return isinstance(data, IteratorABC)


def iter_big_batches(
    inputs: Iterable,
    targets: Iterable | None,
    batch_size: int,
    big_batch_size: int,
    *,
    dtype: type = np.float32,
) -> Iterator[tuple[Array, Array | None]]:
    """Read a forward-only range ``batch_size * big_batch_size`` rows at a time.

    Only one big batch is resident at once. Inputs and targets are consumed in
    lockstep; a length mismatch is reported when either side runs out first.
    """

    chunk = batch_size * big_batch_size
    input_iter = iter(inputs)
    target_iter = None if targets is None else iter(targets)
    while True:
        rows = list(itertools.islice(input_iter, chunk))
        labels = None if target_iter is None else list(itertools.islice(target_iter, chunk))
        if labels is not None and len(labels) != len(rows):
            raise ValueError("inputs and labels have different lengths")
        if not rows:
            return
        block = np.asarray(rows, dtype=dtype).reshape(len(rows), -1)
        yield block, None if labels is None else np.asarray(labels)


@dataclass
class BatchScheduler:
    """Slice a dataset into batches, optionally streaming big batches.

    With ``memory=True`` the dataset is never materialised: it is re-iterated
    every epoch and read in groups of ``big_batch_size`` batches.
    """

    batch_size: int
    big_batch_size: int = 1
    memory: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        if self.big_batch_size < 1:
            raise ValueError("big_batch_size must be positive")

    def batches(
        self,
        inputs: Array | Iterable,
        targets: Array | Iterable | None = None,
        *,
        transform=None,
        dtype: type = np.float32,
    ) -> Iterator[Batch]:
        """Yield one epoch worth of batches.

        ``transform`` maps each input block (a big batch in memory mode, the
        whole dataset otherwise) before it is cut into batches.
        """

        if not self.memory:
            block = inputs if transform is None else transform(inputs)
            yield from iter_batches(block, targets, self.batch_size)
            return
        for block, labels in iter_big_batches(
            inputs, targets, self.batch_size, self.big_batch_size, dtype=dtype
        ):
            if transform is not None:
                block = transform(block)
            yield from iter_batches(block, labels, self.batch_size)


__all__ = [
    "BatchScheduler",
    "batch_slices",
    "count_batches",
    "is_single_pass",
    "iter_batches",
    "iter_big_batches",
]
