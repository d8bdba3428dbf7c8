"""Core numerical primitives for beliefnets."""

from . import activations, layers, strategies, types

__all__ = ["activations", "layers", "strategies", "types"]
