"""Unit types, activation functions and stochastic samplers."""

from __future__ import annotations

from typing import Callable, Dict

import numpy as np

from .types import Array

UNIT_TYPES = ("binary", "gaussian", "relu", "softmax")
ACTIVATIONS = ("sigmoid", "tanh", "relu", "identity", "softmax")


def sigmoid(x: Array) -> Array:
    """Numerically stable logistic function."""

    return np.exp(-np.logaddexp(0.0, -x)).astype(x.dtype, copy=False)


def relu(x: Array) -> Array:
    """Return the ReLU activation."""

    return np.maximum(x, 0.0)


def identity(x: Array) -> Array:
    return x


def tanh(x: Array) -> Array:
    return np.tanh(x)


def softmax(x: Array) -> Array:
    shifted = x - np.max(x, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / np.sum(exp, axis=-1, keepdims=True)


def softplus(x: Array) -> Array:
    return np.logaddexp(0.0, x)


def sigmoid_deriv(y: Array) -> Array:
    return y * (1.0 - y)


def tanh_deriv(y: Array) -> Array:
    return 1.0 - y**2


def relu_deriv(y: Array) -> Array:
    return (y > 0).astype(y.dtype)


def identity_deriv(y: Array) -> Array:
    return np.ones_like(y)


# Derivatives are expressed in terms of the activation output ``y``.
_FORWARD: Dict[str, Callable[[Array], Array]] = {
    "sigmoid": sigmoid,
    "binary": sigmoid,
    "tanh": tanh,
    "relu": relu,
    "identity": identity,
    "gaussian": identity,
    "softmax": softmax,
}

_DERIV: Dict[str, Callable[[Array], Array]] = {
    "sigmoid": sigmoid_deriv,
    "binary": sigmoid_deriv,
    "tanh": tanh_deriv,
    "relu": relu_deriv,
    "identity": identity_deriv,
    "gaussian": identity_deriv,
    # Only meaningful when paired with cross-entropy, see losses.
    "softmax": sigmoid_deriv,
}


def activation(name: str) -> Callable[[Array], Array]:
    try:
        return _FORWARD[name]
    except KeyError as exc:
        raise KeyError(f"Unknown activation: {name}") from exc


def derivative(name: str) -> Callable[[Array], Array]:
    try:
        return _DERIV[name]
    except KeyError as exc:
        raise KeyError(f"Unknown activation: {name}") from exc


def mean_activation(unit: str, pre: Array) -> Array:
    """Expected value of units of type ``unit`` given their input ``pre``."""

    if unit == "binary":
        return sigmoid(pre)
    if unit == "gaussian":
        return pre
    if unit == "relu":
        return relu(pre)
    if unit == "softmax":
        return softmax(pre)
    raise ValueError(f"Unknown unit type: {unit}")


def sample_units(unit: str, pre: Array, mean: Array, rng: np.random.Generator) -> Array:
    """Draw a stochastic state for units of type ``unit``.

    Sampling never raises on non-finite inputs; NaN propagates into the sample
    so that degenerate training runs surface through the returned error.
    """

    dtype = mean.dtype
    if unit == "binary":
        return (rng.random(mean.shape) < mean).astype(dtype)
    if unit == "gaussian":
        return (mean + rng.standard_normal(mean.shape)).astype(dtype)
    if unit == "relu":
        # Noisy rectified linear unit: max(0, x + N(0, sigmoid(x)))
        noise = rng.standard_normal(pre.shape) * np.sqrt(sigmoid(pre))
        return relu(pre + noise).astype(dtype)
    if unit == "softmax":
        cumulative = np.cumsum(mean, axis=-1)
        draws = rng.random((mean.shape[0], 1))
        index = np.minimum((cumulative < draws).sum(axis=-1), mean.shape[-1] - 1)
        out = np.zeros_like(mean)
        out[np.arange(mean.shape[0]), index] = 1.0
        return out
    raise ValueError(f"Unknown unit type: {unit}")


__all__ = [
    "ACTIVATIONS",
    "UNIT_TYPES",
    "activation",
    "derivative",
    "identity",
    "mean_activation",
    "relu",
    "sample_units",
    "sigmoid",
    "softmax",
    "softplus",
    "tanh",
]
