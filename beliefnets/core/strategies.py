"""Gradient strategies for beliefnets."""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable, Dict, List, Protocol, Sequence, Tuple

import numpy as np

from .activations import derivative
from .layers import Layer, RBMLayer
from .types import ActivationState, Array, Gradients, NetworkDescription, StrategyState


class PretrainStrategy(Protocol):
    """Protocol implemented by unsupervised layer-wise estimators."""

    def init(self, layer: RBMLayer) -> StrategyState:
        """Initialise internal state for ``layer``."""

    def gradients(
        self,
        layer: RBMLayer,
        inputs: Array,
        state: StrategyState,
        rng: np.random.Generator,
        executor: Executor | None = None,
    ) -> tuple[Gradients, float, StrategyState]:
        """Return descent gradients, the batch reconstruction error and state."""


class FineTuneStrategy(Protocol):
    """Protocol implemented by supervised whole-network estimators."""

    def init(self, model: NetworkDescription) -> StrategyState:
        """Initialise internal state for ``model``."""

    def backward(
        self,
        layers: Sequence[Layer],
        activations: ActivationState,
        delta: Array,
        state: StrategyState,
    ) -> tuple[Gradients, StrategyState]:
        """Return parameter gradients and the (possibly updated) state."""


def forward(layers: Sequence[Layer], inputs: Array) -> tuple[Array, ActivationState]:
    """Propagate ``inputs`` through ``layers`` keeping every intermediate."""

    layer_inputs: List[Array] = []
    layer_outputs: List[Array] = []
    x = inputs
    for layer in layers:
        layer_inputs.append(x)
        x = layer.activate(x)
        layer_outputs.append(x)
    return x, ActivationState(layer_inputs=layer_inputs, layer_outputs=layer_outputs)


def map_chunks(
    executor: Executor | None,
    fn: Callable[..., tuple],
    arrays: Sequence[Array],
    chunks: int,
) -> List[tuple]:
    """Apply ``fn`` to row-aligned chunks of ``arrays``.

    ``fn`` receives the chunk index followed by one slice of each array. Without
    an executor the whole batch is handled as a single chunk.
    """

    n = arrays[0].shape[0]
    if executor is None or chunks <= 1 or n < 2:
        return [fn(0, *arrays)]
    bounds = np.array_split(np.arange(n), min(chunks, n))
    parts = [[a[idx[0] : idx[-1] + 1] for a in arrays] for idx in bounds]
    futures = [executor.submit(fn, i, *part) for i, part in enumerate(parts)]
    return [f.result() for f in futures]


@dataclass
class ContrastiveDivergence:
    """CD-k estimator.

    The negative phase starts from the hidden sample of the data. With
    ``persistent=True`` the chains survive between batches (PCD-k).
    """

    k: int | None = None
    persistent: bool = False
    chunks: int = 1

    def init(self, layer: RBMLayer) -> StrategyState:
        return StrategyState(metadata={"k": self.k or layer.k, "persistent": self.persistent})

    def gradients(
        self,
        layer: RBMLayer,
        inputs: Array,
        state: StrategyState,
        rng: np.random.Generator,
        executor: Executor | None = None,
    ) -> tuple[Gradients, float, StrategyState]:
        k = int(state.metadata.get("k", self.k or layer.k))
        n = inputs.shape[0]
        chain = self._chain(layer, state, n, rng)
        seeds = rng.integers(0, 2**32 - 1, size=max(1, self.chunks))

        def _stats(index: int, v0: Array, start: Array) -> tuple:
            local = rng if executor is None else np.random.default_rng(seeds[index])
            return _cd_statistics(layer, v0, start, k, local, self.persistent)

        results = map_chunks(executor, _stats, [inputs, chain], self.chunks)

        pos_w = sum(r[0] for r in results)
        pos_b = sum(r[1] for r in results)
        pos_c = sum(r[2] for r in results)
        error_sum = sum(r[3] for r in results)
        if self.persistent:
            # Rows beyond a short batch keep their state for the next batch.
            state.chains[0][:n] = np.concatenate([r[4] for r in results], axis=0)

        grads: Gradients = {
            "W": -pos_w / n,
            "b": -pos_b / n,
            "c": -pos_c / n,
        }
        error = float(error_sum / inputs.size)
        return grads, error, state

    def _chain(
        self, layer: RBMLayer, state: StrategyState, n: int, rng: np.random.Generator
    ) -> Array:
        if not self.persistent:
            # Placeholder aligned with the batch, replaced by the data sample.
            return np.zeros((n, 1), dtype=layer.dtype)
        chain = state.chains.get(0)
        if chain is None or chain.shape[0] < n:
            fresh = (rng.random((n, layer.n_hidden)) < 0.5).astype(layer.dtype)
            if chain is not None:
                fresh[: chain.shape[0]] = chain
            chain = state.chains[0] = fresh
        return chain[:n]


def _cd_statistics(
    layer: RBMLayer,
    v0: Array,
    start: Array,
    k: int,
    rng: np.random.Generator,
    persistent: bool,
) -> tuple:
    h0_mean, h0_sample = layer.sample_hidden(v0, rng)
    vk, hk_mean, hk_sample = layer.gibbs(start if persistent else h0_sample, k, rng)

    pos_w = v0.T @ h0_mean - vk.T @ hk_mean
    pos_b = np.sum(h0_mean - hk_mean, axis=0)
    pos_c = np.sum(v0 - vk, axis=0)

    _, reconstruction = layer.visible_probabilities(h0_mean)
    error_sum = float(np.sum((v0 - reconstruction) ** 2))
    return pos_w, pos_b, pos_c, error_sum, hk_sample


@dataclass
class Backprop:
    """Exact backpropagation through the unrolled layer stack.

    ``trainable`` restricts the update to the top ``trainable`` layers; the
    lower layers keep their pretrained weights.
    """

    trainable: int | None = None

    def init(self, model: NetworkDescription) -> StrategyState:
        n_layers = len(model.layer_dims)
        first = 0 if self.trainable is None else max(0, n_layers - self.trainable)
        return StrategyState(metadata={"first_trainable": first})

    def backward(
        self,
        layers: Sequence[Layer],
        activations: ActivationState,
        delta: Array,
        state: StrategyState,
    ) -> tuple[Gradients, StrategyState]:
        first = int(state.metadata.get("first_trainable", 0))
        layer_inputs = activations.layer_inputs
        layer_outputs = activations.layer_outputs

        grads: Gradients = {}
        batch = delta.shape[0]
        for idx in reversed(range(first, len(layers))):
            grads[f"W{idx}"] = layer_inputs[idx].T @ delta / batch
            grads[f"b{idx}"] = np.mean(delta, axis=0)
            if idx > first:
                below = layers[idx - 1]
                deriv = derivative(below.activation_name)(layer_outputs[idx - 1])
                delta = (delta @ layers[idx].params()["W"].T) * deriv
        return grads, state


def layer_gradients(grads: Gradients, index: int) -> Dict[str, Array]:
    """Extract the gradients of layer ``index`` from a network-wide mapping."""

    suffix = str(index)
    out: Dict[str, Array] = {}
    for name, value in grads.items():
        if name[1:] == suffix:
            out[name[0]] = value
    return out


def sum_chunk_gradients(parts: Sequence[Tuple[Gradients, int]]) -> Gradients:
    """Combine per-chunk mean gradients weighted by chunk size."""

    total = sum(size for _, size in parts)
    combined: Gradients = {}
    for grads, size in parts:
        for name, value in grads.items():
            weighted = value * (size / total)
            combined[name] = combined[name] + weighted if name in combined else weighted
    return combined


__all__ = [
    "Backprop",
    "ContrastiveDivergence",
    "FineTuneStrategy",
    "PretrainStrategy",
    "forward",
    "layer_gradients",
    "map_chunks",
    "sum_chunk_gradients",
]
