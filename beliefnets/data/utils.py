"""Utility helpers for dataset builders."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Mapping

import numpy as np

from ..core.types import Array

DEFAULT_CACHE_SUBDIR = Path.home() / ".cache" / "beliefnets"


def resolve_cache_dir(cache_dir: str | Path | None = None) -> Path:
    """Resolve the effective cache directory for downloaded datasets."""

    base = Path(cache_dir or os.environ.get("BELIEFNETS_CACHE_DIR") or DEFAULT_CACHE_SUBDIR)
    base.mkdir(parents=True, exist_ok=True)
    return base


@dataclass(frozen=True)
class SplitIndices:
    """Indices for train/validation/test partitions."""

    train: np.ndarray
    val: np.ndarray
    test: np.ndarray

    @property
    def sizes(self) -> Mapping[str, int]:
        return {
            "train": int(self.train.size),
            "val": int(self.val.size),
            "test": int(self.test.size),
        }


def deterministic_split(
    n_samples: int,
    *,
    val_split: float = 0.0,
    test_split: float = 0.2,
    seed: int = 0,
) -> SplitIndices:
    """Return seeded, shuffled indices for the requested split ratios."""

    if not 0 <= val_split < 1:
        raise ValueError("val_split must be in [0, 1)")
    if not 0 <= test_split < 1:
        raise ValueError("test_split must be in [0, 1)")
    if val_split + test_split >= 1:
        raise ValueError("val_split + test_split must be < 1")

    rng = np.random.default_rng(seed)
    indices = np.arange(n_samples)
    rng.shuffle(indices)

    test_size = int(round(n_samples * test_split))
    val_size = int(round(n_samples * val_split))
    test_size = min(max(test_size, 1 if test_split > 0 else 0), n_samples)
    val_size = min(max(val_size, 1 if val_split > 0 else 0), n_samples - test_size)
    if n_samples - val_size - test_size <= 0:
        raise ValueError("Not enough samples for the requested splits")

    return SplitIndices(
        train=indices[test_size + val_size :],
        val=indices[test_size : test_size + val_size],
        test=indices[:test_size],
    )


def normalize(array: Array) -> Array:
    """Scale to ``[0, 1]`` by the global maximum."""

    array = np.asarray(array, dtype=np.float32)
    top = float(array.max()) if array.size else 0.0
    return array / top if top > 0 else array


def binarize(array: Array, threshold: float = 0.5) -> Array:
    return (np.asarray(array) > threshold).astype(np.float32)


def standardize(
    array: Array,
    *,
    mean: Array | None = None,
    std: Array | None = None,
) -> tuple[Array, Array, Array]:
    """Apply standard scaling returning the scaled array and parameters."""

    if mean is None or std is None:
        mean = array.mean(axis=0, keepdims=True)
        std = array.std(axis=0, keepdims=True)
        std = np.where(std == 0, 1.0, std)
    scaled = (array - mean) / std
    return scaled.astype(np.float32), mean.astype(np.float32), std.astype(np.float32)


class RowStream:
    """Re-iterable view yielding one row at a time.

    Used to feed memory-mode training from something that is not an array,
    e.g. a memory-mapped file.
    """

    def __init__(self, rows: Array) -> None:
        self._rows = rows

    def __iter__(self) -> Iterator[Array]:
        for i in range(len(self._rows)):
            yield self._rows[i]

    def __len__(self) -> int:
        return len(self._rows)


__all__ = [
    "RowStream",
    "SplitIndices",
    "binarize",
    "deterministic_split",
    "normalize",
    "resolve_cache_dir",
    "standardize",
]
