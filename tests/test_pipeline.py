from __future__ import annotations

import json

import pytest

from beliefnets.data import get_dataset
from beliefnets.training import pipelines


def test_presets_include_builtin_and_file_presets():
    names = set(pipelines.presets())
    assert {"prototypes-dbn", "prototypes-labels", "digits-gaussian"} <= names
    assert {"mnist-dbn", "mnist-labels"} <= names
    for config in pipelines.presets().values():
        assert {"data", "model", "train"} <= set(config)


def test_load_preset_returns_a_copy():
    first = pipelines.load_preset("prototypes-dbn")
    first["train"]["seed"] = 99
    assert pipelines.load_preset("prototypes-dbn")["train"]["seed"] == 0
    with pytest.raises(KeyError, match="Unknown preset"):
        pipelines.load_preset("no-such-preset")


def test_yaml_preset_builds_a_valid_network():
    config = pipelines.load_preset("mnist-dbn")
    dataset = get_dataset(config["data"]["name"], offline=True, **config["data"]["options"])
    network = pipelines.build_network(config["model"], dataset.data_spec)
    assert [layer.output_size for layer in network.layers] == [100, 200, 10]
    assert network.layers[0].init_weights
    assert network.config.batch_size == 25


def test_label_yaml_preset_adds_label_units():
    config = pipelines.load_preset("mnist-labels")
    dataset = get_dataset("mnist", offline=True, offline_samples=20)
    network = pipelines.build_network(config["model"], dataset.data_spec)
    assert [(layer.input_size, layer.output_size) for layer in network.layers] == [
        (784, 200),
        (210, 300),
    ]
    assert network.config.n_labels == 10


def test_digits_gaussian_preset_layers():
    config = pipelines.load_preset("digits-gaussian")
    dataset = get_dataset("digits", **config["data"]["options"])
    layers = pipelines.build_layers(config["model"], dataset.data_spec, seed=3)
    assert layers[0].visible == "gaussian"
    assert layers[0].learning_rate == 0.01
    assert layers[0].batch_size == 20
    assert layers[-1].hidden == "softmax"
    assert layers[-1].output_size == 10
    assert json.loads(json.dumps(config)) == config
