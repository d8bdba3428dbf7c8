"""MNIST with deterministic splits and an offline stand-in."""

from __future__ import annotations

from pathlib import Path

import numpy as np

from .cache import fetch
from .prototypes import noisy_prototypes
from .registry import DatasetSpec, DataSpec, make_splits, register_dataset
from .utils import binarize as binarize_inputs
from .utils import normalize, resolve_cache_dir

MNIST_URL = "https://storage.googleapis.com/tf-keras-datasets/mnist.npz"
MNIST_CHECKSUM = "731c5ac602752760c8e48fbffcf8c3b850d9dc2a2aedcf2cc48468fc17b673d1"


def _load_archive(path: Path) -> tuple[np.ndarray, np.ndarray]:
    with np.load(path) as data:
        x = np.concatenate([data["x_train"], data["x_test"]], axis=0)
        y = np.concatenate([data["y_train"], data["y_test"]], axis=0)
    return x.reshape(x.shape[0], -1).astype(np.float32), y.astype(np.int64)


def _offline_dataset(n_samples: int, seed: int) -> tuple[np.ndarray, np.ndarray]:
    """Binary 28x28 class prototypes with 10% pixel noise, scaled like real images."""

    inputs, labels = noisy_prototypes(n_samples, 28 * 28, 10, flip_prob=0.1, seed=seed)
    return inputs * 255.0, labels


@register_dataset("mnist")
def build_mnist(
    *,
    offline: bool = True,
    cache_dir: str | Path | None = None,
    binarize: bool = False,
    limit: int | None = None,
    offline_samples: int = 1000,
    val_split: float = 0.0,
    test_split: float = 0.2,
    seed: int = 0,
) -> DatasetSpec:
    """Create the MNIST :class:`DatasetSpec`.

    ``offline=True`` never touches the network and substitutes a synthetic set
    with the same shape. ``limit`` keeps the first ``limit`` samples.
    """

    if offline:
        images, labels = _offline_dataset(offline_samples, seed)
        provenance: dict[str, object] = {"mode": "offline", "source": "synthetic"}
    else:
        path, record = fetch(
            "mnist",
            MNIST_URL,
            cache_dir=resolve_cache_dir(cache_dir),
            checksum=MNIST_CHECKSUM,
            filename="mnist.npz",
        )
        images, labels = _load_archive(path)
        provenance = dict(record)
    if limit is not None:
        images, labels = images[:limit], labels[:limit]

    inputs = normalize(images)
    if binarize:
        inputs = binarize_inputs(inputs)

    provenance.update({"binarize": binarize, "limit": limit, "seed": seed})
    return DatasetSpec(
        name="mnist",
        arrays=make_splits(inputs, labels, val_split=val_split, test_split=test_split, seed=seed),
        data_spec=DataSpec(
            d_in=784,
            num_classes=10,
            normalization={"inputs": {"method": "binarize" if binarize else "minmax", "range": [0.0, 1.0]}},
            extra={"input_shape": (28, 28)},
        ),
        provenance=provenance,
    )


__all__ = ["build_mnist"]
