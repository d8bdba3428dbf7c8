"""The 8x8 handwritten digits bundled with scikit-learn."""

from __future__ import annotations

from pathlib import Path

import numpy as np
from sklearn.datasets import load_digits

from .registry import DatasetSpec, DataSpec, make_splits, register_dataset
from .utils import binarize as binarize_inputs
from .utils import standardize


@register_dataset("digits")
def build_digits(
    *,
    offline: bool = True,
    cache_dir: str | Path | None = None,
    preprocess: str = "normalize",
    val_split: float = 0.0,
    test_split: float = 0.2,
    seed: int = 0,
) -> DatasetSpec:
    """Digits scaled to ``[0, 1]``; ``preprocess`` may also be ``binarize`` or ``standardize``.

    The data ships with scikit-learn so no download is needed.
    """

    bunch = load_digits()
    inputs = bunch.data.astype(np.float32) / 16.0
    labels = bunch.target.astype(np.int64)
    if preprocess == "binarize":
        inputs = binarize_inputs(inputs)
    elif preprocess == "standardize":
        inputs, _, _ = standardize(inputs)
    elif preprocess != "normalize":
        raise ValueError(f"Unknown preprocessing: {preprocess}")

    return DatasetSpec(
        name="digits",
        arrays=make_splits(inputs, labels, val_split=val_split, test_split=test_split, seed=seed),
        data_spec=DataSpec(
            d_in=int(inputs.shape[1]),
            num_classes=10,
            normalization={"inputs": {"method": preprocess}},
            extra={"input_shape": (8, 8)},
        ),
        provenance={"mode": "bundled", "source": "sklearn.datasets.load_digits", "seed": seed},
    )


__all__ = ["build_digits"]
