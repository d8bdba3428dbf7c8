from __future__ import annotations

import numpy as np

from beliefnets import DBN, RBMLayer, label_predictor, predictor, test_set
from beliefnets.data import get_dataset


def test_digits_end_to_end_smoke():
    spec = get_dataset("digits", preprocess="binarize", seed=0)
    x, y = spec.split("train")
    net = DBN(
        [RBMLayer(64, 32, batch_size=20), RBMLayer(32, 10, hidden="softmax", batch_size=20)],
        batch_size=20,
    )
    net.pretrain(x, 2)
    error = net.fine_tune(x, y, 3)
    assert 0.0 <= error < 0.9
    test_x, test_y = spec.split("test")
    assert 0.0 <= test_set(net, test_x, test_y, predictor()) <= 1.0


def test_label_predictor_on_digits():
    spec = get_dataset("digits", preprocess="binarize", seed=1)
    x, y = spec.split("train")
    net = DBN([RBMLayer(64, 32, batch_size=20), RBMLayer(42, 40, batch_size=20)], n_labels=10)
    net.train_with_labels(x, y, 10, 2)
    predictions = label_predictor()(net, x[:10])
    assert predictions.shape == (10,)
    assert np.all((predictions >= 0) & (predictions < 10))
