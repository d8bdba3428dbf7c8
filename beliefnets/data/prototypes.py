"""Synthetic binary prototypes with bit-flip noise."""

from __future__ import annotations

from pathlib import Path

import numpy as np

from ..core.types import Array
from .registry import DatasetSpec, DataSpec, make_splits, register_dataset


def noisy_prototypes(
    n_samples: int,
    n_features: int,
    n_classes: int,
    *,
    flip_prob: float = 0.05,
    seed: int = 0,
) -> tuple[Array, Array]:
    """Sample binary vectors around one random prototype per class.

    Every bit of a sample is flipped independently with ``flip_prob``.
    """

    if not 0 <= flip_prob < 0.5:
        raise ValueError("flip_prob must be in [0, 0.5)")
    rng = np.random.default_rng(seed)
    prototypes = rng.random((n_classes, n_features)) < 0.5
    labels = rng.integers(0, n_classes, size=n_samples)
    flips = rng.random((n_samples, n_features)) < flip_prob
    inputs = np.logical_xor(prototypes[labels], flips).astype(np.float32)
    return inputs, labels.astype(np.int64)


@register_dataset("prototypes")
def build_prototypes(
    *,
    offline: bool = True,
    cache_dir: str | Path | None = None,
    n_samples: int = 1000,
    n_features: int = 64,
    n_classes: int = 10,
    flip_prob: float = 0.05,
    val_split: float = 0.0,
    test_split: float = 0.2,
    seed: int = 0,
) -> DatasetSpec:
    """Small, fully offline classification problem used by tests and presets."""

    inputs, labels = noisy_prototypes(
        n_samples, n_features, n_classes, flip_prob=flip_prob, seed=seed
    )
    return DatasetSpec(
        name="prototypes",
        arrays=make_splits(inputs, labels, val_split=val_split, test_split=test_split, seed=seed),
        data_spec=DataSpec(
            d_in=n_features,
            num_classes=n_classes,
            normalization={"inputs": {"method": "binary"}},
        ),
        provenance={
            "mode": "offline",
            "source": "synthetic",
            "n_samples": n_samples,
            "flip_prob": flip_prob,
            "seed": seed,
        },
    )


__all__ = ["build_prototypes", "noisy_prototypes"]
