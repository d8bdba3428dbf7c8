from __future__ import annotations

from collections import deque
from typing import Mapping

import numpy as np
import pytest

from beliefnets import DBN, DenseLayer, RBMLayer, TimerRegistry
from beliefnets.data import RowStream
from beliefnets.data.prototypes import noisy_prototypes
from beliefnets.training.metrics import label_predictor, predictor, test_set


class _Capture:
    def __init__(self) -> None:
        self.history: list[tuple[int, Mapping[str, float]]] = []

    def on_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        self.history.append((epoch, dict(metrics)))


@pytest.fixture(scope="module")
def prototypes():
    return noisy_prototypes(500, 64, 10, flip_prob=0.05, seed=0)


def _classifier(**options) -> DBN:
    return DBN(
        [
            RBMLayer(64, 48, batch_size=25),
            RBMLayer(48, 32, batch_size=25, seed=1),
            RBMLayer(32, 10, hidden="softmax", batch_size=25, seed=2),
        ],
        batch_size=25,
        learning_rate=0.1,
        **options,
    )


def test_pretrain_then_fine_tune_reaches_low_error(prototypes):
    x, y = prototypes
    capture = _Capture()
    net = _classifier()
    pretrain_errors = net.pretrain(x, 20, callbacks=[capture])
    assert len(pretrain_errors) == 3
    assert all(np.isfinite(pretrain_errors))
    first_layer = [m["error"] for _, m in capture.history if m["layer"] == 0]
    assert len(first_layer) == 20
    assert first_layer[-1] < first_layer[0]

    error = net.fine_tune(x, y, 10)
    assert error < 5e-2
    assert test_set(net, x, y, predictor()) < 0.1
    assert net.predict(x[:3]).shape == (3,)
    assert net.activate(x[:3]).shape == (3, 10)


def test_label_mode_training_and_prediction(prototypes):
    x, y = prototypes
    net = DBN(
        [RBMLayer(64, 48, batch_size=25), RBMLayer(58, 80, batch_size=25, seed=1)],
        n_labels=10,
    )
    errors = net.train_with_labels(x, y, 10, 20)
    assert len(errors) == 2 and all(np.isfinite(errors))
    assert test_set(net, x, y, label_predictor()) < 0.3
    reconstruction = test_set(net, x, y, label_predictor("reconstruction"))
    assert 0.0 <= reconstruction <= 1.0
    assert net.predict(x[:4]).shape == (4,)
    with pytest.raises(ValueError):
        net.fine_tune(x, y, 1)


def test_diverging_fine_tune_returns_non_finite_error():
    rng = np.random.default_rng(0)
    x = (rng.standard_normal((100, 8)) * 10).astype(np.float32)
    y = rng.integers(0, 4, size=100)
    net = DBN(
        [DenseLayer(8, 8, activation="identity"), DenseLayer(8, 4, activation="identity", seed=1)],
        batch_size=10,
        learning_rate=5.0,
    )
    error = net.fine_tune(x, y, 5)
    assert not np.isfinite(error)


def test_gaussian_visible_relu_hidden_stays_finite():
    rng = np.random.default_rng(3)
    x = rng.standard_normal((80, 16)).astype(np.float32)
    net = DBN(
        [
            RBMLayer(16, 12, visible="gaussian", hidden="relu", learning_rate=0.001),
            RBMLayer(12, 4, hidden="softmax", learning_rate=0.01),
        ]
    )
    errors = net.pretrain(x, 5)
    assert all(np.isfinite(errors))


def test_parallel_mode_is_deterministic_and_matches_sequential_updates(prototypes):
    x, y = prototypes
    x, y = x[:200], y[:200]

    def _run(parallel: bool):
        net = _classifier(parallel=parallel, workers=2)
        pretrain = net.pretrain(x, 2)
        return net, pretrain

    first, first_errors = _run(True)
    second, second_errors = _run(True)
    assert first_errors == second_errors
    for a, b in zip(first.layers, second.layers):
        np.testing.assert_array_equal(a.W, b.W)

    sequential = _classifier()
    threaded = _classifier(parallel=True, workers=3)
    seq_error = sequential.fine_tune(x, y, 1)
    par_error = threaded.fine_tune(x, y, 1)
    assert np.isfinite(par_error)
    assert par_error == pytest.approx(seq_error, abs=0.02)
    for a, b in zip(sequential.layers, threaded.layers):
        np.testing.assert_allclose(a.W, b.W, rtol=1e-4, atol=1e-5)


def test_memory_mode_matches_resident_training(prototypes):
    x, y = prototypes
    resident = DBN([RBMLayer(64, 16, batch_size=10)], batch_size=10)
    streamed = DBN([RBMLayer(64, 16, batch_size=10)], batch_size=10, memory=True, big_batch_size=3)
    np.testing.assert_allclose(resident.pretrain(x, 2), streamed.pretrain(RowStream(x), 2), rtol=1e-5)
    np.testing.assert_allclose(resident.layers[0].W, streamed.layers[0].W, rtol=1e-5, atol=1e-6)

    resident = _classifier()
    streamed = _classifier(memory=True, big_batch_size=3)
    resident_error = resident.fine_tune(x, y, 2)
    streamed_error = streamed.fine_tune(RowStream(x), RowStream(y), 2)
    assert streamed_error == pytest.approx(resident_error, abs=1e-6)


def test_memory_mode_pretrains_every_layer_from_streamed_input(prototypes):
    x, _ = prototypes
    net = _classifier(memory=True, big_batch_size=3)
    net.layers[0].init_weights = True
    errors = net.pretrain(RowStream(x[:120]), 2)
    assert len(errors) == 3 and all(np.isfinite(errors))
    assert np.any(net.layers[0].c != 0)


def test_containers_of_vectors_are_accepted(prototypes):
    x, y = prototypes
    net = _classifier()
    net.pretrain(deque(x[:50]), 1)
    net.fine_tune([row for row in x[:50]], list(y[:50]), 1)
    net.fine_tune((row for row in x[:50]), iter(y[:50]), 2)


def test_fine_tune_layers_leaves_lower_layers_untouched(prototypes):
    x, y = prototypes
    net = _classifier(fine_tune_layers=1)
    lower = [layer.W.copy() for layer in net.layers[:2]]
    top = net.layers[2].W.copy()
    net.fine_tune(x[:100], y[:100], 1)
    for before, layer in zip(lower, net.layers[:2]):
        np.testing.assert_array_equal(before, layer.W)
    assert not np.array_equal(top, net.layers[2].W)


def test_conjugate_gradient_fine_tuning(prototypes):
    x, y = prototypes
    net = _classifier(trainer="cg")
    net.pretrain(x, 10)
    error = net.fine_tune(x, y, 5)
    assert error < 0.2
    assert test_set(net, x, y, predictor()) < 0.2

    rng = np.random.default_rng(4)
    relu = DBN(
        [
            RBMLayer(16, 12, hidden="relu", learning_rate=0.001),
            RBMLayer(12, 4, hidden="softmax", learning_rate=0.01),
        ],
        trainer="cg",
    )
    features = (rng.random((40, 16)) < 0.3).astype(np.float32)
    relu.pretrain(features, 2)
    assert np.isfinite(relu.fine_tune(features, rng.integers(0, 4, size=40), 2))


def test_persistent_cd_and_timers(prototypes):
    x, y = prototypes
    timers = TimerRegistry()
    net = _classifier(pretrainer="pcd")
    net.timers = timers
    net.pretrain(x[:100], 2)
    net.fine_tune(x[:100], y[:100], 1)
    assert timers.get("pretrain").count == 1
    assert timers.get("pretrain:layer").count == 3
    assert timers.get("pretrain:epoch").count == 6
    assert timers.get("fine_tune").count == 1
    assert timers.get("fine_tune:batch").count == 4
    assert len(timers.entries()) <= 32


def test_verbose_network_prints_epochs(prototypes, capsys):
    x, y = prototypes
    net = _classifier(verbose=True)
    net.fine_tune(x[:50], y[:50], 2)
    out = capsys.readouterr().out
    assert "epoch 1 - error:" in out
    assert "epoch 2 - error:" in out
