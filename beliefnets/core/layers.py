"""Layer implementations: restricted Boltzmann machines and dense layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Protocol

import numpy as np

from .activations import (
    ACTIVATIONS,
    UNIT_TYPES,
    activation,
    mean_activation,
    sample_units,
    softplus,
)
from .types import Array


class Layer(Protocol):
    """Contract shared by every layer a network can hold."""

    pretrainable: bool

    @property
    def input_size(self) -> int | None:
        """Number of input units, ``None`` until a dynamic layer is set up."""

    @property
    def output_size(self) -> int | None:
        """Number of output units, ``None`` until a dynamic layer is set up."""

    @property
    def activation_name(self) -> str:
        """Name of the forward nonlinearity used during fine-tuning."""

    def activate(self, inputs: Array) -> Array:
        """Deterministic forward activation."""

    def params(self) -> Dict[str, Array]:
        """Mutable parameter arrays keyed by name."""

    def init_layer(self, n_in: int, n_out: int) -> None:
        """Configure the dimensions of a dynamic layer."""


# Hidden unit type -> forward nonlinearity used once the RBM is unrolled into a
# feed-forward network.
_HIDDEN_TO_ACTIVATION = {
    "binary": "sigmoid",
    "gaussian": "identity",
    "relu": "relu",
    "softmax": "softmax",
}


@dataclass
class RBMLayer:
    """Restricted Boltzmann machine trained with contrastive divergence.

    Attributes
    ----------
    n_visible, n_hidden:
        Layer dimensions. Both may be ``None`` for a dynamic layer, in which
        case :meth:`init_layer` must be called before the layer is used.
    visible, hidden:
        Unit types, one of ``binary``, ``gaussian``, ``relu`` or ``softmax``.
    learning_rate, momentum, initial_momentum, final_momentum,
    final_momentum_epoch, weight_decay:
        Pretraining hyperparameters. Momentum switches from
        ``initial_momentum`` to ``final_momentum`` at ``final_momentum_epoch``.
    batch_size:
        Mini-batch size used while this layer is pretrained.
    k:
        Number of Gibbs steps of the contrastive-divergence estimator.
    init_weights:
        Initialise the visible biases from the training data, ``log(p/(1-p))``.
    parallel:
        Spread the per-batch statistics over a thread pool.
    """

    n_visible: int | None
    n_hidden: int | None
    visible: str = "binary"
    hidden: str = "binary"
    learning_rate: float = 0.1
    momentum: bool = True
    initial_momentum: float = 0.5
    final_momentum: float = 0.9
    final_momentum_epoch: int = 6
    weight_decay: float = 0.0
    batch_size: int = 10
    k: int = 1
    init_weights: bool = False
    parallel: bool = False
    dtype: type = np.float32
    seed: int = 0
    W: Array = field(init=False, repr=False)
    b: Array = field(init=False, repr=False)
    c: Array = field(init=False, repr=False)

    pretrainable = True

    def __post_init__(self) -> None:
        if self.visible not in UNIT_TYPES:
            raise ValueError(f"Unknown visible unit type: {self.visible}")
        if self.hidden not in UNIT_TYPES:
            raise ValueError(f"Unknown hidden unit type: {self.hidden}")
        if self.k < 1:
            raise ValueError("k must be at least 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.dtype = np.dtype(self.dtype).type
        if self.dtype not in (np.float32, np.float64):
            raise ValueError(f"Unsupported weight type: {self.dtype}")
        if self.n_visible is not None and self.n_hidden is not None:
            self.reset(self.seed)

    @classmethod
    def dynamic(cls, **kwargs: object) -> "RBMLayer":
        """Build a layer whose dimensions are configured later."""

        return cls(None, None, **kwargs)  # type: ignore[arg-type]

    def init_layer(self, n_in: int, n_out: int) -> None:
        if n_in < 1 or n_out < 1:
            raise ValueError("Layer dimensions must be positive")
        self.n_visible = int(n_in)
        self.n_hidden = int(n_out)
        self.reset(self.seed)

    def reset(self, seed: int) -> None:
        rng = np.random.default_rng(seed)
        self.W = (rng.standard_normal((self.n_visible, self.n_hidden)) * 0.01).astype(self.dtype)
        self.b = np.zeros(self.n_hidden, dtype=self.dtype)
        self.c = np.zeros(self.n_visible, dtype=self.dtype)

    @property
    def input_size(self) -> int | None:
        return self.n_visible

    @property
    def output_size(self) -> int | None:
        return self.n_hidden

    @property
    def is_initialised(self) -> bool:
        return self.n_visible is not None and self.n_hidden is not None

    @property
    def activation_name(self) -> str:
        return _HIDDEN_TO_ACTIVATION[self.hidden]

    def params(self) -> Dict[str, Array]:
        return {"W": self.W, "b": self.b, "c": self.c}

    def momentum_at(self, epoch: int) -> float:
        if not self.momentum:
            return 0.0
        return self.initial_momentum if epoch < self.final_momentum_epoch else self.final_momentum

    # ------------------------------------------------------------------
    # Conditional distributions

    def hidden_probabilities(self, v: Array) -> tuple[Array, Array]:
        """Return the hidden pre-activations and their means given ``v``."""

        pre = v @ self.W + self.b
        return pre, mean_activation(self.hidden, pre)

    def visible_probabilities(self, h: Array) -> tuple[Array, Array]:
        pre = h @ self.W.T + self.c
        return pre, mean_activation(self.visible, pre)

    def sample_hidden(self, v: Array, rng: np.random.Generator) -> tuple[Array, Array]:
        """Return ``(mean, sample)`` of the hidden units given ``v``."""

        pre, mean = self.hidden_probabilities(v)
        return mean, sample_units(self.hidden, pre, mean, rng)

    def sample_visible(self, h: Array, rng: np.random.Generator) -> tuple[Array, Array]:
        pre, mean = self.visible_probabilities(h)
        return mean, sample_units(self.visible, pre, mean, rng)

    def gibbs(self, h: Array, k: int, rng: np.random.Generator) -> tuple[Array, Array, Array]:
        """Run ``k`` alternating Gibbs steps starting from hidden sample ``h``.

        Visible units are reconstructed from their means. Returns the visible
        means, the hidden means and the final hidden sample of the chain.
        """

        v_mean = h_mean = h
        for _ in range(k):
            _, v_mean = self.visible_probabilities(h)
            h_mean, h = self.sample_hidden(v_mean, rng)
        return v_mean, h_mean, h

    # ------------------------------------------------------------------
    # Forward use and diagnostics

    def activate(self, inputs: Array) -> Array:
        _, mean = self.hidden_probabilities(np.asarray(inputs, dtype=self.dtype))
        return mean

    def reconstruct(self, v: Array) -> Array:
        _, h_mean = self.hidden_probabilities(v)
        _, v_mean = self.visible_probabilities(h_mean)
        return v_mean

    def reconstruction_error(self, v: Array) -> float:
        v = np.asarray(v, dtype=self.dtype)
        return float(np.mean((v - self.reconstruct(v)) ** 2))

    def free_energy(self, v: Array) -> Array:
        """Free energy of each row of ``v``."""

        v = np.asarray(v, dtype=self.dtype)
        hidden_term = np.sum(softplus(v @ self.W + self.b), axis=-1)
        if self.visible == "gaussian":
            visible_term = 0.5 * np.sum((v - self.c) ** 2, axis=-1)
        else:
            visible_term = -(v @ self.c)
        return visible_term - hidden_term

    def init_visible_bias(self, data: Array) -> None:
        """Set visible biases to ``log(p / (1 - p))`` of the data means."""

        if self.visible != "binary":
            return
        p = np.clip(np.mean(data, axis=0), 1e-3, 1.0 - 1e-3)
        self.c = np.log(p / (1.0 - p)).astype(self.dtype)


@dataclass
class DenseLayer:
    """Fully connected layer ``f(x W + b)`` trained by backpropagation."""

    n_in: int | None
    n_out: int | None
    activation: str = "sigmoid"
    dtype: type = np.float32
    seed: int = 0
    W: Array = field(init=False, repr=False)
    b: Array = field(init=False, repr=False)

    pretrainable = False

    def __post_init__(self) -> None:
        if self.activation not in ACTIVATIONS:
            raise ValueError(f"Unknown activation: {self.activation}")
        self.dtype = np.dtype(self.dtype).type
        if self.dtype not in (np.float32, np.float64):
            raise ValueError(f"Unsupported weight type: {self.dtype}")
        if self.n_in is not None and self.n_out is not None:
            self.reset(self.seed)

    @classmethod
    def dynamic(cls, **kwargs: object) -> "DenseLayer":
        return cls(None, None, **kwargs)  # type: ignore[arg-type]

    def init_layer(self, n_in: int, n_out: int) -> None:
        if n_in < 1 or n_out < 1:
            raise ValueError("Layer dimensions must be positive")
        self.n_in = int(n_in)
        self.n_out = int(n_out)
        self.reset(self.seed)

    def reset(self, seed: int) -> None:
        rng = np.random.default_rng(seed)
        scale = 1.0 / np.sqrt(self.n_in)
        self.W = (rng.standard_normal((self.n_in, self.n_out)) * scale).astype(self.dtype)
        self.b = np.zeros(self.n_out, dtype=self.dtype)

    @property
    def input_size(self) -> int | None:
        return self.n_in

    @property
    def output_size(self) -> int | None:
        return self.n_out

    @property
    def is_initialised(self) -> bool:
        return self.n_in is not None and self.n_out is not None

    @property
    def activation_name(self) -> str:
        return self.activation

    def params(self) -> Dict[str, Array]:
        return {"W": self.W, "b": self.b}

    def activate(self, inputs: Array) -> Array:
        x = np.asarray(inputs, dtype=self.dtype)
        return activation(self.activation)(x @ self.W + self.b)


__all__ = ["DenseLayer", "Layer", "RBMLayer"]
