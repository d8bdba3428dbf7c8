"""Loss registry used by the fine-tuning trainer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable

import numpy as np

from ..core.activations import derivative
from ..core.types import Array

LossFn = Callable[[Array, Array], tuple[float, Array]]


@dataclass(frozen=True)
class Loss:
    """Loss wrapper returning both the scalar loss and dL/dy.

    ``canonical`` lists the output activations for which the gradient with
    respect to the pre-activation collapses to ``outputs - targets``.
    """

    name: str
    fn: LossFn
    canonical: FrozenSet[str] = field(default_factory=frozenset)

    def __call__(self, predictions: Array, targets: Array) -> tuple[float, Array]:
        return self.fn(predictions, targets)

    def delta(self, outputs: Array, targets: Array, activation: str) -> tuple[float, Array]:
        """Return the loss and the error signal at the output pre-activation."""

        loss, grad = self.fn(outputs, targets)
        if activation in self.canonical:
            return loss, outputs - targets
        return loss, grad * derivative(activation)(outputs)


class LossRegistry:
    """Central registry for loss functions."""

    def __init__(self) -> None:
        self._registry: Dict[str, Loss] = {}

    def register(self, name: str, fn: LossFn, canonical: Iterable[str] = ()) -> None:
        self._registry[name] = Loss(name, fn, frozenset(canonical))

    def get(self, name: str) -> Loss:
        try:
            return self._registry[name]
        except KeyError as exc:
            available = ", ".join(sorted(self._registry))
            raise KeyError(f"Unknown loss {name!r}. Available losses: {available}") from exc

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def resolve(self, name: str, *, activation: str) -> Loss:
        """Resolve ``auto`` to the loss matching the output ``activation``."""

        if name == "auto":
            if activation == "softmax":
                name = "ce"
            elif activation == "sigmoid":
                name = "bce"
            else:
                name = "mse"
        return self.get(name)


REGISTRY = LossRegistry()

_EPS = 1e-9


def _mse(pred: Array, target: Array) -> tuple[float, Array]:
    diff = pred - target
    loss = float(np.mean(np.sum(np.square(diff), axis=1)))
    return loss, diff


def _cross_entropy(probs: Array, target: Array) -> tuple[float, Array]:
    loss = float(-np.mean(np.sum(target * np.log(probs + _EPS), axis=1)))
    grad = -target / (probs + _EPS)
    return loss, grad


def _bce(probs: Array, target: Array) -> tuple[float, Array]:
    loss = float(
        -np.mean(
            np.sum(target * np.log(probs + _EPS) + (1 - target) * np.log(1 - probs + _EPS), axis=1)
        )
    )
    grad = (probs - target) / (probs * (1 - probs) + _EPS)
    return loss, grad


REGISTRY.register("mse", _mse)
REGISTRY.register("ce", _cross_entropy, canonical=("softmax",))
REGISTRY.register("bce", _bce, canonical=("sigmoid",))

__all__ = ["Loss", "LossRegistry", "REGISTRY"]
