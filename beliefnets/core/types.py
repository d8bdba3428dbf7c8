"""Core typing contracts for beliefnets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np

Array = np.ndarray


@dataclass(frozen=True)
class Batch:
    """A single mini-batch of data."""

    inputs: Array
    targets: Array | None = None

    def __len__(self) -> int:
        return int(self.inputs.shape[0])


@dataclass
class ActivationState:
    """Intermediate activations captured during the forward pass."""

    layer_inputs: List[Array]
    layer_outputs: List[Array]


Gradients = Dict[str, Array]


@dataclass(frozen=True)
class NetworkDescription:
    """Description of a layer stack."""

    layer_dims: List[tuple[int, int]]
    n_labels: int | None = None


@dataclass
class StrategyState:
    """State persisted by a gradient strategy between batches."""

    chains: Dict[int, Array] = field(default_factory=dict)
    metadata: Dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class RunResult:
    """Summary returned by :func:`beliefnets.training.pipelines.run_pipeline`."""

    error: float
    test_error: float | None
    metrics_path: str
    manifest_path: str
    summary_path: str = ""
    pretrain_errors: List[float] = field(default_factory=list)
