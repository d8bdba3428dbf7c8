from __future__ import annotations

import csv
import json
from pathlib import Path

import pytest

from beliefnets.training import pipelines


def _small(config, run_dir):
    config = json.loads(json.dumps(config))
    config["data"]["options"]["n_samples"] = 200
    config["train"]["pretrain_epochs"] = 3
    config["train"]["fine_tune_epochs"] = 3
    config["train"]["run_dir"] = str(run_dir)
    return config


def test_prototype_preset_writes_artifacts(tmp_path, capsys):
    config = _small(pipelines.load_preset("prototypes-dbn"), tmp_path / "run")
    config["train"]["enable_plots"] = True
    result = pipelines.run_pipeline(config)

    assert "=== beliefnets run ===" in capsys.readouterr().out
    run_dir = tmp_path / "run"
    assert 0.0 <= result.error <= 1.0
    assert result.test_error is not None
    assert len(result.pretrain_errors) == 3

    records = [json.loads(line) for line in Path(result.metrics_path).read_text().splitlines()]
    phases = [record["phase"] for record in records]
    assert phases.count("pretrain") == 9
    assert phases.count("fine_tune") == 3
    assert records[-1]["error"] == pytest.approx(result.error)

    with (run_dir / "metrics_fine_tune.csv").open() as handle:
        rows = list(csv.DictReader(handle))
    assert [int(row["epoch"]) for row in rows] == [1, 2, 3]

    manifest = json.loads(Path(result.manifest_path).read_text())
    assert manifest["config"]["train"]["seed"] == 0
    assert manifest["dataset"]["mode"] == "offline"
    assert manifest["network"]["layers"] == [[64, 48], [48, 32], [32, 10]]

    summary = json.loads(Path(result.summary_path).read_text())
    assert set(summary["curves"]) == {
        "pretrain/layer0",
        "pretrain/layer1",
        "pretrain/layer2",
        "fine_tune",
    }
    assert summary["curves"]["fine_tune"]["error"]["epochs"] == 3
    assert (run_dir / "error.png").exists()
    assert "pretrain(1)" in (run_dir / "timers.txt").read_text()
    assert json.loads((run_dir / "metrics_test.json").read_text())["test_error"] == result.test_error


def test_label_preset_runs(tmp_path):
    config = _small(pipelines.load_preset("prototypes-labels"), tmp_path / "labels")
    result = pipelines.run_pipeline(config)
    assert len(result.pretrain_errors) == 2
    assert 0.0 <= result.error <= 1.0


def test_memory_mode_pipeline(tmp_path):
    config = _small(pipelines.load_preset("prototypes-dbn"), tmp_path / "memory")
    config["model"]["network"].update({"memory": True, "big_batch_size": 2})
    result = pipelines.run_pipeline(config)
    assert 0.0 <= result.error <= 1.0


def test_explicit_layer_list_with_dense_top(tmp_path):
    config = {
        "data": {"name": "digits", "options": {"preprocess": "normalize"}},
        "model": {
            "layers": [
                {"type": "rbm", "n_hidden": 32},
                {"type": "dense", "activation": "softmax"},
            ],
        },
        "train": {"pretrain_epochs": 1, "fine_tune_epochs": 1, "run_dir": str(tmp_path / "d")},
    }
    result = pipelines.run_pipeline(config)
    assert result.pretrain_errors and 0.0 <= result.error <= 1.0


def test_bad_model_configs_are_rejected(tmp_path):
    base = {
        "data": {"name": "prototypes", "options": {"n_samples": 50}},
        "model": {"layers": [{"type": "conv", "n_hidden": 4}]},
        "train": {"run_dir": str(tmp_path / "bad")},
    }
    with pytest.raises(KeyError, match="Unknown layer type"):
        pipelines.run_pipeline(base)
    base["model"] = {"hidden": []}
    with pytest.raises(ValueError):
        pipelines.run_pipeline(base)
    base["model"] = {"hidden": [8]}
    base["train"]["mode"] = "wake_sleep"
    with pytest.raises(ValueError, match="Unknown training mode"):
        pipelines.run_pipeline(base)
