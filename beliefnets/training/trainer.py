"""Deterministic training loops for layer-wise pretraining and fine-tuning."""

from __future__ import annotations

import os
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field, is_dataclass, replace
from typing import Callable, Dict, Iterable, Mapping, Sequence

import numpy as np

from ..core.layers import Layer, RBMLayer
from ..core.strategies import (
    Backprop,
    ContrastiveDivergence,
    FineTuneStrategy,
    PretrainStrategy,
    forward,
    layer_gradients,
    map_chunks,
    sum_chunk_gradients,
)
from ..core.types import Array, Batch, Gradients, NetworkDescription, StrategyState
from ..timers import NullTimerRegistry, TimerRegistry
from .batching import BatchScheduler
from .losses import REGISTRY as LOSS_REGISTRY
from .losses import Loss
from .metrics import classification_error, one_hot


@dataclass
class SGDOptimizer:
    """SGD with momentum and L2 weight decay on weight matrices."""

    lr: float
    momentum: float = 0.0
    weight_decay: float = 0.0
    _velocity: Dict[str, Array] = field(default_factory=dict, init=False, repr=False)

    def step(
        self,
        params: Mapping[str, Array],
        grads: Gradients,
        *,
        prefix: str = "",
        momentum: float | None = None,
    ) -> None:
        """Apply ``grads`` to ``params`` in place."""

        mu = self.momentum if momentum is None else momentum
        for name, grad in grads.items():
            param = params.get(name)
            if param is None:
                continue
            if self.weight_decay and name == "W":
                grad = grad + self.weight_decay * param
            update = -self.lr * grad
            if mu:
                key = prefix + name
                velocity = self._velocity.get(key)
                if velocity is not None:
                    update = mu * velocity + update
                self._velocity[key] = update
            param += update.astype(param.dtype, copy=False)

    def reset(self) -> None:
        self._velocity.clear()


def _dot(a: Gradients, b: Gradients) -> float:
    return float(sum(np.vdot(a[name], b[name]) for name in a))


@dataclass
class ConjugateGradient:
    """Polak-Ribiere conjugate gradient run on every mini-batch.

    Each batch starts from steepest descent and performs ``iterations`` line
    searches. A trial step is accepted when it satisfies the Armijo condition;
    otherwise it shrinks, and the search stops after ``max_evals`` trials with
    the parameters left at the last accepted point.
    """

    iterations: int = 3
    step: float = 0.5
    shrink: float = 0.5
    max_evals: int = 10
    armijo: float = 1e-4
    weight_decay: float = 0.0

    def minimize(
        self,
        params: Mapping[str, Array],
        loss: float,
        grads: Gradients,
        evaluate: Callable[[], tuple[float, Gradients]],
    ) -> None:
        """Lower ``evaluate()`` by moving ``params`` (keyed like ``grads``) in place."""

        names = [name for name in grads if name in params]
        loss, g = self._regularised(params, loss, grads, names)
        direction = {name: -g[name] for name in names}
        for _ in range(self.iterations):
            slope = _dot(g, direction)
            if not slope < 0.0:
                direction = {name: -g[name] for name in names}
                slope = -_dot(g, g)
            if not np.isfinite(slope) or slope == 0.0:
                return
            origin = {name: params[name].copy() for name in names}
            alpha = self.step
            for _ in range(self.max_evals):
                for name in names:
                    params[name][...] = origin[name] + alpha * direction[name]
                trial_loss, trial_grads = self._regularised(params, *evaluate(), names)
                if np.isfinite(trial_loss) and trial_loss <= loss + self.armijo * alpha * slope:
                    break
                alpha *= self.shrink
            else:
                for name in names:
                    params[name][...] = origin[name]
                return
            denom = _dot(g, g)
            beta = max(0.0, (_dot(trial_grads, trial_grads) - _dot(trial_grads, g)) / denom)
            direction = {name: -trial_grads[name] + beta * direction[name] for name in names}
            loss, g = trial_loss, trial_grads

    def _regularised(
        self, params: Mapping[str, Array], loss: float, grads: Gradients, names: Sequence[str]
    ) -> tuple[float, Gradients]:
        out = {name: np.asarray(grads[name], dtype=np.float64) for name in names}
        if not self.weight_decay:
            return float(loss), out
        for name in names:
            if name.startswith("W"):
                weights = params[name]
                loss += 0.5 * self.weight_decay * float(np.vdot(weights, weights))
                out[name] = out[name] + self.weight_decay * weights
        return float(loss), out


def make_optimizer(
    trainer: str | FineTuneStrategy, *, lr: float, weight_decay: float = 0.0
) -> SGDOptimizer | ConjugateGradient:
    """Return the update rule matching the trainer name."""

    if trainer == "cg":
        return ConjugateGradient(weight_decay=weight_decay)
    return SGDOptimizer(lr=lr, weight_decay=weight_decay)


def _executor(parallel: bool, workers: int | None):
    if not parallel:
        return nullcontext(None)
    return ThreadPoolExecutor(max_workers=workers or os.cpu_count() or 1)


def _emit_epoch(callbacks: Sequence[object], epoch: int, metrics: Mapping[str, float]) -> None:
    for callback in callbacks:
        if hasattr(callback, "on_epoch"):
            callback.on_epoch(epoch, metrics)  # type: ignore[attr-defined]
        elif callable(callback):
            callback(epoch, metrics)


def _weighted_mean(values: Sequence[tuple[float, int]]) -> float:
    total = sum(size for _, size in values)
    return float(sum(value * size for value, size in values) / total)


class LayerTrainer:
    """Run the unsupervised epoch loop of a single RBM layer."""

    def __init__(
        self,
        layer: RBMLayer,
        strategy: PretrainStrategy,
        *,
        index: int = 0,
        callbacks: Sequence[object] | None = None,
        timers: TimerRegistry | None = None,
        parallel: bool = False,
        workers: int | None = None,
        seed: int = 0,
    ) -> None:
        self.layer = layer
        self.index = index
        self.callbacks = list(callbacks or [])
        self.timers = timers or NullTimerRegistry()
        self.parallel = parallel or layer.parallel
        if self.parallel and is_dataclass(strategy) and getattr(strategy, "chunks", None) == 1:
            strategy = replace(strategy, chunks=workers or os.cpu_count() or 1)
        self.strategy = strategy
        self.workers = workers
        self.optimizer = SGDOptimizer(lr=layer.learning_rate, weight_decay=layer.weight_decay)
        self._rng = np.random.default_rng(seed)
        self._state: StrategyState | None = None

    def run(
        self,
        inputs: Array | Iterable,
        epochs: int,
        scheduler: BatchScheduler | None = None,
        *,
        transform: Callable[[Array], Array] | None = None,
    ) -> float:
        """Train for ``epochs`` and return the last epoch's reconstruction error."""

        scheduler = scheduler or BatchScheduler(self.layer.batch_size)
        self._state = self.strategy.init(self.layer)

        error = float("nan")
        with _executor(self.parallel, self.workers) as executor, np.errstate(
            over="ignore", invalid="ignore", divide="ignore"
        ):
            for epoch in range(epochs):
                with self.timers.time("pretrain:epoch"):
                    errors = [
                        (self.train_batch(batch, epoch, executor), len(batch))
                        for batch in scheduler.batches(
                            inputs, transform=transform, dtype=self.layer.dtype
                        )
                    ]
                if not errors:
                    raise ValueError("Cannot pretrain on an empty dataset")
                error = _weighted_mean(errors)
                _emit_epoch(
                    self.callbacks,
                    epoch + 1,
                    {"layer": float(self.index), "error": error},
                )
        return error

    def train_batch(self, batch: Batch, epoch: int, executor: Executor | None = None) -> float:
        """Apply one contrastive-divergence update, return the batch error."""

        with self.timers.time("pretrain:batch"):
            grads, error, self._state = self.strategy.gradients(
                self.layer, batch.inputs, self._state, self._rng, executor
            )
            self.optimizer.step(
                self.layer.params(), grads, momentum=self.layer.momentum_at(epoch)
            )
        return error


class Trainer:
    """Run supervised fine-tuning with a pluggable gradient strategy."""

    def __init__(
        self,
        layers: Sequence[Layer],
        strategy: FineTuneStrategy,
        optimizer: SGDOptimizer | ConjugateGradient,
        *,
        loss: str | Loss = "auto",
        momentum: Callable[[int], float] | float = 0.0,
        callbacks: Sequence[object] | None = None,
        timers: TimerRegistry | None = None,
        parallel: bool = False,
        workers: int | None = None,
    ) -> None:
        self.layers = list(layers)
        self.strategy = strategy
        self.optimizer = optimizer
        output_activation = self.layers[-1].activation_name
        self.loss = loss if isinstance(loss, Loss) else LOSS_REGISTRY.resolve(
            loss, activation=output_activation
        )
        self._momentum = momentum
        self.callbacks = list(callbacks or [])
        self.timers = timers or NullTimerRegistry()
        self.parallel = parallel
        self.workers = workers
        self.num_classes = int(self.layers[-1].output_size)
        self._state: StrategyState | None = None

    def describe(self) -> NetworkDescription:
        return NetworkDescription(
            layer_dims=[(int(layer.input_size), int(layer.output_size)) for layer in self.layers]
        )

    def momentum_at(self, epoch: int) -> float:
        if callable(self._momentum):
            return float(self._momentum(epoch))
        return float(self._momentum)

    def run(
        self,
        inputs: Array | Iterable,
        labels: Array | Iterable,
        epochs: int,
        scheduler: BatchScheduler,
    ) -> float:
        """Fine-tune for ``epochs`` and return the last epoch's mean error."""

        self._state = self.strategy.init(self.describe())
        chunks = (self.workers or os.cpu_count() or 1) if self.parallel else 1
        dtype = self.layers[0].params()["W"].dtype

        error = float("nan")
        with _executor(self.parallel, self.workers) as executor, np.errstate(
            over="ignore", invalid="ignore", divide="ignore"
        ):
            for epoch in range(epochs):
                results = []
                with self.timers.time("fine_tune:epoch"):
                    for batch in scheduler.batches(inputs, labels, dtype=dtype):
                        batch_error, batch_loss = self.train_batch(
                            batch, epoch, executor=executor, chunks=chunks
                        )
                        results.append((batch_error, batch_loss, len(batch)))
                if not results:
                    raise ValueError("Cannot fine-tune on an empty dataset")
                error = _weighted_mean([(e, n) for e, _, n in results])
                loss = _weighted_mean([(value, n) for _, value, n in results])
                _emit_epoch(self.callbacks, epoch + 1, {"error": error, "loss": loss})
        return error

    def train_batch(
        self,
        batch: Batch,
        epoch: int,
        *,
        executor: Executor | None = None,
        chunks: int = 1,
    ) -> tuple[float, float]:
        """Compute and apply one update; return the batch error and loss."""

        if self._state is None:
            self._state = self.strategy.init(self.describe())
        inputs = np.asarray(batch.inputs, dtype=self.layers[0].params()["W"].dtype)
        targets = one_hot(batch.targets, self.num_classes, dtype=inputs.dtype)
        activation = self.layers[-1].activation_name

        def _chunk(_: int, x: Array, t: Array) -> tuple:
            outputs, activations = forward(self.layers, x)
            loss_value, delta = self.loss.delta(outputs, t, activation)
            grads, _state = self.strategy.backward(self.layers, activations, delta, self._state)
            return grads, x.shape[0], loss_value, classification_error(outputs, t)

        def _evaluate() -> tuple[list, Gradients]:
            parts = map_chunks(executor, _chunk, [inputs, targets], chunks)
            return parts, sum_chunk_gradients([(p[0], p[1]) for p in parts])

        n = inputs.shape[0]
        with self.timers.time("fine_tune:batch"):
            parts, grads = _evaluate()
            error = sum(p[3] * p[1] for p in parts) / n
            loss = sum(p[2] * p[1] for p in parts) / n
            if isinstance(self.optimizer, ConjugateGradient):

                def _loss_and_grads() -> tuple[float, Gradients]:
                    trial_parts, trial_grads = _evaluate()
                    return sum(p[2] * p[1] for p in trial_parts) / n, trial_grads

                self.optimizer.minimize(self._parameters(), loss, grads, _loss_and_grads)
            else:
                momentum = self.momentum_at(epoch)
                for idx, layer in enumerate(self.layers):
                    own = layer_gradients(grads, idx)
                    if own:
                        self.optimizer.step(
                            layer.params(), own, prefix=f"{idx}:", momentum=momentum
                        )
        return float(error), float(loss)

    def _parameters(self) -> Dict[str, Array]:
        """Parameters of every layer keyed like network-wide gradients."""

        return {
            f"{name}{idx}": value
            for idx, layer in enumerate(self.layers)
            for name, value in layer.params().items()
        }


PRETRAINERS: Dict[str, Callable[[], PretrainStrategy]] = {
    "cd": ContrastiveDivergence,
    "pcd": lambda: ContrastiveDivergence(persistent=True),
}

TRAINERS: Dict[str, Callable[..., FineTuneStrategy]] = {
    "sgd": Backprop,
    "cg": Backprop,
}


def resolve_pretrainer(name: str | PretrainStrategy) -> PretrainStrategy:
    if not isinstance(name, str):
        return name
    try:
        return PRETRAINERS[name]()
    except KeyError as exc:
        available = ", ".join(sorted(PRETRAINERS))
        raise KeyError(f"Unknown pretrainer {name!r}. Available: {available}") from exc


def resolve_trainer(name: str | FineTuneStrategy, **options: object) -> FineTuneStrategy:
    if not isinstance(name, str):
        return name
    try:
        factory = TRAINERS[name]
    except KeyError as exc:
        available = ", ".join(sorted(TRAINERS))
        raise KeyError(f"Unknown trainer {name!r}. Available: {available}") from exc
    return factory(**options)


__all__ = [
    "ConjugateGradient",
    "LayerTrainer",
    "PRETRAINERS",
    "SGDOptimizer",
    "TRAINERS",
    "Trainer",
    "make_optimizer",
    "resolve_pretrainer",
    "resolve_trainer",
]
