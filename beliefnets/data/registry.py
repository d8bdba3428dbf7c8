"""Dataset registry and metadata contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, MutableMapping, Tuple

import numpy as np

from ..core.types import Array
from .utils import deterministic_split


@dataclass(frozen=True)
class DataSpec:
    """Structural information about a dataset.

    Attributes
    ----------
    d_in:
        Flattened dimensionality of the inputs.
    num_classes:
        Number of label values; labels are integers in ``[0, num_classes)``.
    normalization:
        Description of the preprocessing already applied to the inputs, kept
        for the run manifest.
    extra:
        Free-form metadata such as the original image shape.
    """

    d_in: int
    num_classes: int
    normalization: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DatasetSpec:
    """A registered dataset with its materialised splits."""

    name: str
    arrays: Dict[str, Tuple[Array, Array]]
    data_spec: DataSpec
    provenance: Dict[str, Any]

    @property
    def splits(self) -> Dict[str, int]:
        return {name: int(x.shape[0]) for name, (x, _) in self.arrays.items()}

    def split(self, name: str) -> Tuple[Array, Array]:
        """Return ``(inputs, labels)`` of split ``name``."""

        try:
            return self.arrays[name]
        except KeyError as exc:
            raise KeyError(f"Dataset {self.name!r} has no split {name!r}") from exc


DatasetFactory = Callable[..., DatasetSpec]


_REGISTRY: MutableMapping[str, DatasetFactory] = {}


def register_dataset(
    name: str | None = None,
    factory: DatasetFactory | None = None,
) -> Callable[[DatasetFactory], DatasetFactory] | DatasetFactory:
    """Register a dataset factory, as a decorator or directly::

        @register_dataset("digits")
        def build_digits(**kwargs):
            ...

        register_dataset("digits", build_digits)
    """

    def _decorator(func: DatasetFactory) -> DatasetFactory:
        _REGISTRY[str(name or func.__name__)] = func
        return func

    if factory is not None:
        return _decorator(factory)
    if name is None:
        raise TypeError("register_dataset requires a name when used without a decorator")
    return _decorator


def get_dataset(
    dataset: str,
    /,
    *,
    offline: bool = True,
    cache_dir: str | Path | None = None,
    **options: Any,
) -> DatasetSpec:
    """Build the :class:`DatasetSpec` registered as ``dataset``."""

    if dataset not in _REGISTRY:
        raise KeyError(f"Unknown dataset: {dataset}. Available: {', '.join(available_datasets())}")
    spec = _REGISTRY[dataset](offline=offline, cache_dir=cache_dir, **options)
    _validate_spec(spec)
    return spec


def available_datasets() -> Iterable[str]:
    return sorted(_REGISTRY)


def _validate_spec(spec: DatasetSpec) -> None:
    if spec.data_spec.num_classes < 1:
        raise ValueError("Datasets must define at least one class")
    if "train" not in spec.arrays:
        raise ValueError(f"Dataset {spec.name!r} has no train split")
    for split, (inputs, labels) in spec.arrays.items():
        if inputs.shape[0] != labels.shape[0]:
            raise ValueError(
                f"Split {split!r} has {inputs.shape[0]} inputs but {labels.shape[0]} labels"
            )
        if inputs.ndim != 2 or inputs.shape[1] != spec.data_spec.d_in:
            raise ValueError(f"Split {split!r} inputs must have shape (n, {spec.data_spec.d_in})")
        if labels.size and (labels.min() < 0 or labels.max() >= spec.data_spec.num_classes):
            raise ValueError(f"Split {split!r} has labels outside [0, {spec.data_spec.num_classes})")


def make_splits(
    inputs: Array,
    labels: Array,
    *,
    val_split: float,
    test_split: float,
    seed: int,
) -> Dict[str, Tuple[Array, Array]]:
    """Cut ``inputs``/``labels`` into deterministic train/val/test arrays.

    Empty splits are left out.
    """

    indices = deterministic_split(
        inputs.shape[0], val_split=val_split, test_split=test_split, seed=seed
    )
    arrays: Dict[str, Tuple[Array, Array]] = {}
    for name in ("train", "val", "test"):
        idx = np.sort(getattr(indices, name))
        if idx.size:
            arrays[name] = (inputs[idx], labels[idx])
    return arrays


__all__ = [
    "DataSpec",
    "DatasetSpec",
    "available_datasets",
    "get_dataset",
    "make_splits",
    "register_dataset",
]
