"""Dataset registry and builders."""

# Built-in datasets register themselves on import.
from . import digits as _digits  # noqa: F401
from . import mnist as _mnist  # noqa: F401
from . import prototypes as _prototypes  # noqa: F401
from .registry import (
    DatasetSpec,
    DataSpec,
    available_datasets,
    get_dataset,
    register_dataset,
)
from .utils import RowStream

__all__ = [
    "DataSpec",
    "DatasetSpec",
    "RowStream",
    "available_datasets",
    "get_dataset",
    "register_dataset",
]
