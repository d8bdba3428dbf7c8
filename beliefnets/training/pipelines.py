"""Pipeline assembly: datasets, network construction and reporting for one run."""

from __future__ import annotations

import json
import time
from copy import deepcopy
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

import yaml

from ..core.layers import DenseLayer, Layer, RBMLayer
from ..core.types import RunResult
from ..data import RowStream, get_dataset
from ..data.registry import DataSpec
from ..network import DBN, NetworkConfig
from ..reporting.artifacts import write_manifest
from ..reporting.metrics import CsvSink, JsonlSink
from ..reporting.plots import PlotAdapter
from ..reporting.summary import write_summary
from ..timers import TimerRegistry
from .metrics import label_predictor, predictor, test_set

_PRESETS: Dict[str, Mapping[str, object]] = {
    "prototypes-dbn": {
        "data": {
            "name": "prototypes",
            "options": {"n_samples": 500, "n_features": 64, "flip_prob": 0.05, "seed": 0},
        },
        "model": {
            "hidden": [48, 32],
            "layer_defaults": {"batch_size": 25, "learning_rate": 0.1},
            "network": {"batch_size": 25, "learning_rate": 0.1},
        },
        "train": {
            "pretrain_epochs": 20,
            "fine_tune_epochs": 10,
            "seed": 0,
            "run_dir": "runs/prototypes-dbn",
            "enable_plots": False,
        },
    },
    "prototypes-labels": {
        "data": {
            "name": "prototypes",
            "options": {"n_samples": 500, "n_features": 64, "flip_prob": 0.05, "seed": 0},
        },
        "model": {
            "hidden": [40, 60],
            "n_labels": 10,
            "layer_defaults": {"batch_size": 25, "learning_rate": 0.1},
        },
        "train": {
            "mode": "labels",
            "pretrain_epochs": 20,
            "seed": 0,
            "run_dir": "runs/prototypes-labels",
            "enable_plots": False,
        },
    },
    "digits-gaussian": {
        "data": {"name": "digits", "options": {"preprocess": "standardize"}},
        "model": {
            "layers": [
                {"type": "rbm", "n_hidden": 100, "visible": "gaussian", "learning_rate": 0.01},
                {"type": "rbm", "n_hidden": 64},
                {"type": "rbm", "hidden": "softmax"},
            ],
            "layer_defaults": {"batch_size": 20},
            "network": {"batch_size": 20, "learning_rate": 0.05},
        },
        "train": {
            "pretrain_epochs": 10,
            "fine_tune_epochs": 10,
            "seed": 1,
            "run_dir": "runs/digits-gaussian",
            "enable_plots": False,
        },
    },
}

_PRESET_DIR = Path(__file__).resolve().parents[2] / "configs" / "presets"
_FILE_PRESETS_CACHE: Dict[str, Mapping[str, object]] | None = None

_LAYER_TYPES = {"rbm": RBMLayer, "dense": DenseLayer}


def _read_preset_file(path: Path) -> Mapping[str, object]:
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ValueError(f"Unsupported preset file type: {path.suffix}")

    if not isinstance(data, Mapping):
        raise TypeError(f"Preset {path.name} must decode to a mapping")
    return data


def _file_presets() -> Dict[str, Mapping[str, object]]:
    global _FILE_PRESETS_CACHE
    if _FILE_PRESETS_CACHE is None:
        found: Dict[str, Mapping[str, object]] = {}
        if _PRESET_DIR.exists():
            for file in sorted(_PRESET_DIR.iterdir()):
                if file.suffix.lower() not in {".yaml", ".yml", ".json"}:
                    continue
                data = _read_preset_file(file)
                missing = {"data", "model", "train"} - set(data)
                if missing:
                    raise KeyError(
                        f"Preset {file.name} is missing required sections: "
                        f"{', '.join(sorted(missing))}"
                    )
                found[file.stem] = json.loads(json.dumps(data))
        _FILE_PRESETS_CACHE = found
    return {name: deepcopy(cfg) for name, cfg in _FILE_PRESETS_CACHE.items()}


def presets() -> Mapping[str, Mapping[str, object]]:
    combined: Dict[str, Mapping[str, object]] = {}
    combined.update({name: deepcopy(cfg) for name, cfg in _PRESETS.items()})
    combined.update(_file_presets())
    return combined


def load_preset(name: str) -> Mapping[str, object]:
    file_overrides = _file_presets()
    if name in file_overrides:
        return file_overrides[name]
    try:
        return deepcopy(_PRESETS[name])
    except KeyError as exc:
        raise KeyError(f"Unknown preset: {name}. Available: {', '.join(sorted(presets()))}") from exc


# ----------------------------------------------------------------------
# Network assembly


def _layer_entries(model_cfg: Mapping[str, object]) -> List[Dict[str, object]]:
    if "layers" in model_cfg:
        return [dict(entry) for entry in model_cfg["layers"]]  # type: ignore[union-attr]
    hidden = [int(h) for h in model_cfg.get("hidden", [])]  # type: ignore[union-attr]
    if not hidden:
        raise ValueError("Model config needs either 'layers' or a non-empty 'hidden' list")
    entries: List[Dict[str, object]] = [{"type": "rbm", "n_hidden": h} for h in hidden]
    if model_cfg.get("n_labels") is None:
        entries.append({"type": "rbm", "hidden": "softmax"})
    return entries


def build_layers(
    model_cfg: Mapping[str, object],
    data_spec: DataSpec,
    *,
    seed: int = 0,
) -> List[Layer]:
    """Instantiate the layer stack described by ``model_cfg``.

    Missing input sizes follow the layer below (plus the label units for the
    top layer in label mode); the first layer reads ``data_spec.d_in`` and a
    missing output size on the last layer of a classifier is the class count.
    """

    entries = _layer_entries(model_cfg)
    defaults = dict(model_cfg.get("layer_defaults", {}))  # type: ignore[arg-type]
    dtype = model_cfg.get("dtype", "float32")
    n_labels = model_cfg.get("n_labels")
    last = len(entries) - 1

    layers: List[Layer] = []
    previous = data_spec.d_in
    for idx, entry in enumerate(entries):
        kind = str(entry.pop("type", "rbm"))
        try:
            cls = _LAYER_TYPES[kind]
        except KeyError as exc:
            raise KeyError(f"Unknown layer type {kind!r}. Available: {', '.join(_LAYER_TYPES)}") from exc

        n_in = entry.pop("n_visible", entry.pop("n_in", None))
        if n_in is None:
            n_in = previous + (int(n_labels) if n_labels is not None and idx == last else 0)
        n_out = entry.pop("n_hidden", entry.pop("n_out", None))
        if n_out is None:
            if idx != last or n_labels is not None:
                raise ValueError(f"Layer {idx} needs an explicit output size")
            n_out = data_spec.num_classes

        options = {"dtype": dtype, "seed": seed + idx}
        if cls is RBMLayer:
            options.update(defaults)
        options.update(entry)
        layers.append(cls(int(n_in), int(n_out), **options))  # type: ignore[arg-type]
        previous = int(n_out)
    return layers


def build_network(
    model_cfg: Mapping[str, object],
    data_spec: DataSpec,
    *,
    seed: int = 0,
    timers: TimerRegistry | None = None,
    verbose: bool = False,
) -> DBN:
    options = dict(model_cfg.get("network", {}))  # type: ignore[arg-type]
    options.setdefault("seed", seed)
    options.setdefault("verbose", verbose)
    if model_cfg.get("n_labels") is not None:
        options["n_labels"] = int(model_cfg["n_labels"])  # type: ignore[arg-type]
    return DBN(
        build_layers(model_cfg, data_spec, seed=seed),
        NetworkConfig(**options),
        timers=timers,
    )


# ----------------------------------------------------------------------
# Runs


def run_pipeline(config: Mapping[str, object]) -> RunResult:
    """Train one network as described by ``config`` and write its artifacts.

    ``config`` has ``data``, ``model`` and ``train`` sections; see the
    built-in presets for examples.
    """

    data_cfg = dict(config["data"])  # type: ignore[arg-type]
    model_cfg = dict(config["model"])  # type: ignore[arg-type]
    train_cfg = dict(config["train"])  # type: ignore[arg-type]

    dataset = get_dataset(
        str(data_cfg["name"]),
        offline=bool(config.get("offline", True)),
        cache_dir=train_cfg.get("cache_dir"),
        **dict(data_cfg.get("options", {})),
    )
    seed = int(train_cfg.get("seed", 0))
    mode = str(train_cfg.get("mode", "fine_tune"))
    if mode not in {"fine_tune", "labels"}:
        raise ValueError(f"Unknown training mode: {mode}")
    if mode == "labels" and model_cfg.get("n_labels") is None:
        model_cfg["n_labels"] = dataset.data_spec.num_classes

    timers = TimerRegistry()
    network = build_network(
        model_cfg,
        dataset.data_spec,
        seed=seed,
        timers=timers,
        verbose=bool(train_cfg.get("verbose", False)),
    )

    run_dir = _resolve_run_dir(train_cfg, dataset.name, mode)
    run_dir.mkdir(parents=True, exist_ok=True)
    _print_startup_summary(dataset=dataset.name, network=network, mode=mode, run_dir=run_dir)

    metrics_path = run_dir / "metrics.jsonl"
    pretrain_sinks = [
        JsonlSink(metrics_path, phase="pretrain", seed=seed),
        CsvSink(run_dir / "metrics_pretrain.csv", phase="pretrain"),
    ]
    fine_tune_sinks = [
        JsonlSink(metrics_path, phase="fine_tune", seed=seed, append=True),
        CsvSink(run_dir / "metrics_fine_tune.csv", phase="fine_tune"),
    ]
    plots = PlotAdapter(run_dir, enable_plots=bool(train_cfg.get("enable_plots", False)))
    pretrain_sinks.append(plots.for_phase("pretrain"))
    fine_tune_sinks.append(plots.for_phase("fine_tune"))

    inputs, labels = dataset.split("train")
    train_inputs, train_labels = inputs, labels
    if network.config.memory:
        train_inputs, train_labels = RowStream(inputs), RowStream(labels)

    pretrain_epochs = int(train_cfg.get("pretrain_epochs", 0))
    fine_tune_epochs = int(train_cfg.get("fine_tune_epochs", 0))
    pretrain_errors: List[float] = []
    if mode == "labels":
        pretrain_errors = network.train_with_labels(
            inputs, labels, int(network.config.n_labels), max(1, pretrain_epochs), callbacks=pretrain_sinks
        )
        predict = label_predictor(str(train_cfg.get("label_method", "free_energy")))
        error = test_set(network, inputs, labels, predict)
    else:
        predict = predictor()
        if pretrain_epochs > 0:
            pretrain_errors = network.pretrain(train_inputs, pretrain_epochs, callbacks=pretrain_sinks)
        if fine_tune_epochs > 0:
            error = network.fine_tune(train_inputs, train_labels, fine_tune_epochs, callbacks=fine_tune_sinks)
        else:
            error = test_set(network, inputs, labels, predict)

    test_error = None
    if dataset.splits.get("test", 0) > 0:
        test_inputs, test_labels = dataset.split("test")
        test_error = test_set(network, test_inputs, test_labels, predict)
    (run_dir / "metrics_test.json").write_text(
        json.dumps({"error": error, "test_error": test_error}, indent=2)
    )

    plots.close()
    with (run_dir / "timers.txt").open("w", encoding="utf-8") as handle:
        timers.dump(handle)

    safe_config = json.loads(json.dumps(config))
    manifest = write_manifest(
        run_dir / "manifest.json",
        config=safe_config,
        dataset=dataset.provenance,
        network={
            "layers": [[layer.input_size, layer.output_size] for layer in network.layers],
            "n_labels": network.config.n_labels,
        },
    )
    summary_path = write_summary(
        metrics_path,
        run_dir / "summary.json",
        extra={"error": error, "test_error": test_error, "pretrain_errors": pretrain_errors},
    )
    (run_dir / "config.json").write_text(json.dumps(safe_config, indent=2))

    return RunResult(
        error=float(error),
        test_error=test_error,
        metrics_path=str(metrics_path),
        manifest_path=manifest,
        summary_path=summary_path,
        pretrain_errors=pretrain_errors,
    )


def _resolve_run_dir(train_cfg: Mapping[str, object], dataset: str, mode: str) -> Path:
    if "run_dir" in train_cfg:
        return Path(str(train_cfg["run_dir"]))
    timestamp = time.strftime("%Y%m%d-%H%M%S")
    return Path("runs") / timestamp / dataset / mode


def _print_startup_summary(*, dataset: str, network: DBN, mode: str, run_dir: Path) -> None:
    dims: Sequence[tuple] = [(layer.input_size, layer.output_size) for layer in network.layers]
    param_count = sum(int(n_in) * int(n_out) for n_in, n_out in dims)
    print("=== beliefnets run ===")
    print(f"Dataset       : {dataset}")
    print(f"Layers        : {dims}")
    print(f"Mode          : {mode}")
    print(f"Trainer       : {network.config.trainer} / {network.config.pretrainer}")
    print(f"Labels        : {network.config.n_labels}")
    print(f"Parameters    : {param_count}")
    print(f"Run dir       : {run_dir}")
    print("======================")


__all__ = ["build_layers", "build_network", "load_preset", "presets", "run_pipeline"]
