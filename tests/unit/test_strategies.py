from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np

from beliefnets.core.layers import DenseLayer, RBMLayer
from beliefnets.core.strategies import (
    Backprop,
    ContrastiveDivergence,
    forward,
    layer_gradients,
    map_chunks,
    sum_chunk_gradients,
)
from beliefnets.core.types import NetworkDescription


def _binary(rng, shape):
    return (rng.random(shape) < 0.5).astype(np.float32)


def test_cd_gradient_shapes_and_error():
    rng = np.random.default_rng(0)
    layer = RBMLayer(8, 5)
    strategy = ContrastiveDivergence()
    state = strategy.init(layer)
    grads, error, _ = strategy.gradients(layer, _binary(rng, (6, 8)), state, rng)
    assert grads["W"].shape == (8, 5)
    assert grads["b"].shape == (5,)
    assert grads["c"].shape == (8,)
    assert 0.0 <= error <= 1.0


def test_cd_k_uses_layer_default():
    layer = RBMLayer(4, 3, k=3)
    assert ContrastiveDivergence().init(layer).metadata["k"] == 3
    assert ContrastiveDivergence(k=2).init(layer).metadata["k"] == 2


def test_persistent_cd_keeps_chains_between_batches():
    rng = np.random.default_rng(1)
    layer = RBMLayer(6, 4)
    strategy = ContrastiveDivergence(persistent=True)
    state = strategy.init(layer)
    _, _, state = strategy.gradients(layer, _binary(rng, (5, 6)), state, rng)
    assert state.chains[0].shape == (5, 4)
    tail = state.chains[0][3:].copy()
    _, _, state = strategy.gradients(layer, _binary(rng, (3, 6)), state, rng)
    assert state.chains[0].shape == (5, 4)
    np.testing.assert_array_equal(state.chains[0][3:], tail)


def test_chunked_cd_matches_shapes_and_is_deterministic():
    data = _binary(np.random.default_rng(2), (10, 6))
    layer = RBMLayer(6, 4)
    strategy = ContrastiveDivergence(chunks=3)
    results = []
    with ThreadPoolExecutor(max_workers=3) as pool:
        for _ in range(2):
            rng = np.random.default_rng(7)
            grads, error, _ = strategy.gradients(layer, data, strategy.init(layer), rng, pool)
            results.append((grads, error))
    np.testing.assert_array_equal(results[0][0]["W"], results[1][0]["W"])
    assert results[0][1] == results[1][1]


def test_map_chunks_covers_every_row():
    x = np.arange(10).reshape(10, 1)

    def _rows(index, part):
        return (index, part[:, 0].tolist())

    with ThreadPoolExecutor(max_workers=2) as pool:
        parts = map_chunks(pool, _rows, [x], 3)
    assert [p[0] for p in parts] == [0, 1, 2]
    assert sum((p[1] for p in parts), []) == list(range(10))
    assert map_chunks(None, _rows, [x], 3) == [(0, list(range(10)))]


def test_backprop_gradient_shapes_and_trainable_subset():
    rng = np.random.default_rng(3)
    layers = [RBMLayer(6, 5), RBMLayer(5, 4), DenseLayer(4, 3, activation="softmax")]
    outputs, acts = forward(layers, rng.random((7, 6)).astype(np.float32))
    delta = outputs - np.eye(3, dtype=np.float32)[rng.integers(0, 3, 7)]
    description = NetworkDescription(layer_dims=[(6, 5), (5, 4), (4, 3)])

    full = Backprop()
    grads, _ = full.backward(layers, acts, delta, full.init(description))
    assert set(grads) == {"W0", "b0", "W1", "b1", "W2", "b2"}
    assert grads["W0"].shape == (6, 5)
    assert layer_gradients(grads, 1)["W"].shape == (5, 4)

    top = Backprop(trainable=1)
    grads, _ = top.backward(layers, acts, delta, top.init(description))
    assert set(grads) == {"W2", "b2"}


def test_backprop_matches_numerical_gradient():
    rng = np.random.default_rng(4)
    layers = [
        DenseLayer(3, 4, activation="sigmoid", dtype=np.float64, seed=1),
        DenseLayer(4, 2, activation="identity", dtype=np.float64, seed=2),
    ]
    x = rng.standard_normal((5, 3))
    t = rng.standard_normal((5, 2))

    def _loss():
        out, _ = forward(layers, x)
        return 0.5 * np.sum((out - t) ** 2) / x.shape[0]

    out, acts = forward(layers, x)
    strategy = Backprop()
    grads, _ = strategy.backward(
        layers, acts, out - t, strategy.init(NetworkDescription(layer_dims=[(3, 4), (4, 2)]))
    )
    eps = 1e-6
    w = layers[0].W
    numeric = np.zeros_like(w)
    for i in range(w.shape[0]):
        for j in range(w.shape[1]):
            w[i, j] += eps
            up = _loss()
            w[i, j] -= 2 * eps
            down = _loss()
            w[i, j] += eps
            numeric[i, j] = (up - down) / (2 * eps)
    np.testing.assert_allclose(grads["W0"], numeric, rtol=1e-4, atol=1e-7)


def test_sum_chunk_gradients_weights_by_size():
    parts = [({"W0": np.ones(2)}, 1), ({"W0": np.full(2, 4.0)}, 3)]
    np.testing.assert_allclose(sum_chunk_gradients(parts)["W0"], np.full(2, 3.25))
