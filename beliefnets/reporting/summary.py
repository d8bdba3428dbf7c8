"""Deterministic run summarisation."""

from __future__ import annotations

import json
import math
from pathlib import Path
from typing import Iterable, Mapping

import numpy as np


def _curve_key(record: Mapping[str, object]) -> str:
    phase = str(record.get("phase", "train"))
    if "layer" in record:
        return f"{phase}/layer{int(record['layer'])}"  # type: ignore[arg-type]
    return phase


def _group(records: Iterable[Mapping[str, object]]) -> Mapping[str, dict]:
    curves: dict[str, dict[str, list[float]]] = {}
    for record in records:
        metrics = curves.setdefault(_curve_key(record), {})
        for key, value in record.items():
            if key in {"epoch", "layer", "seed"}:
                continue
            if isinstance(value, (int, float)):
                metrics.setdefault(key, []).append(float(value))
    return curves


def summarise_curve(values: list[float]) -> Mapping[str, object]:
    """Statistics of one metric curve; NaN epochs are counted, not averaged."""

    arr = np.asarray(values, dtype=np.float64)
    finite = arr[np.isfinite(arr)]
    last = float(arr[-1])
    return {
        "epochs": int(arr.size),
        "last": None if math.isnan(last) else last,
        "min": float(np.min(finite)) if finite.size else None,
        "mean": float(np.mean(finite)) if finite.size else None,
        "best_epoch": int(np.argmin(np.where(np.isfinite(arr), arr, np.inf))) + 1
        if finite.size
        else None,
        "non_finite": int(arr.size - finite.size),
    }


def write_summary(
    metrics_jsonl: str | Path,
    out_summary_json: str | Path,
    *,
    extra: Mapping[str, object] | None = None,
) -> str:
    """Summarise every curve of ``metrics_jsonl`` into ``out_summary_json``."""

    metrics_path = Path(metrics_jsonl)
    out_path = Path(out_summary_json)
    out_path.parent.mkdir(parents=True, exist_ok=True)

    records: list[Mapping[str, object]] = []
    if metrics_path.exists():
        for line in metrics_path.read_text().splitlines():
            line = line.strip()
            if line:
                records.append(json.loads(line))

    summary = {
        "version": 1,
        "records": len(records),
        "curves": {
            name: {metric: summarise_curve(values) for metric, values in metrics.items()}
            for name, metrics in _group(records).items()
        },
    }
    if extra:
        summary.update(extra)
    out_path.write_text(json.dumps(summary, sort_keys=True, indent=2))
    return str(out_path)


__all__ = ["summarise_curve", "write_summary"]
