"""beliefnets public API."""

from .core import activations  # noqa: F401
from .core import types  # noqa: F401
from .core.layers import DenseLayer, RBMLayer
from .network import DBN, NetworkConfig
from .timers import NullTimerRegistry, TimerRegistry
from .training.metrics import label_predictor, predictor, test_set
from .training.pipelines import load_preset, presets, run_pipeline

__all__ = [
    "DBN",
    "DenseLayer",
    "NetworkConfig",
    "NullTimerRegistry",
    "RBMLayer",
    "TimerRegistry",
    "activations",
    "label_predictor",
    "load_preset",
    "predictor",
    "presets",
    "run_pipeline",
    "test_set",
    "types",
]
