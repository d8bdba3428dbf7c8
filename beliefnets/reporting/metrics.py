"""Epoch metric sinks.

Every sink implements ``on_epoch(epoch, metrics)`` and can therefore be passed
in the ``callbacks`` of any training call.
"""

from __future__ import annotations

import csv
import json
import math
import sys
from pathlib import Path
from typing import Mapping, TextIO

from .artifacts import git_sha


def _numeric(metrics: Mapping[str, object]) -> dict:
    return {k: float(v) for k, v in metrics.items() if isinstance(v, (int, float))}


class JsonlSink:
    """Append-only JSONL writer; one record per epoch."""

    def __init__(
        self,
        path: str | Path,
        *,
        phase: str = "fine_tune",
        seed: int | None = None,
        sha: str | None = None,
        append: bool = False,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not append:
            self.path.write_text("")
        self.phase = phase
        self.seed = seed
        self.sha = sha or git_sha()

    def on_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        record = {
            "epoch": int(epoch),
            "phase": self.phase,
            "seed": self.seed,
            "sha": self.sha,
        }
        record.update(_numeric(metrics))
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")

    __call__ = on_epoch


class CsvSink:
    """Write epoch metrics to CSV with a sorted, stable header."""

    def __init__(self, path: str | Path, *, phase: str = "fine_tune") -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.phase = phase

    def on_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        row = {"epoch": int(epoch), "phase": self.phase}
        row.update(_numeric(metrics))
        with self.path.open("a", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=sorted(row.keys()))
            if handle.tell() == 0:
                writer.writeheader()
            writer.writerow(row)

    __call__ = on_epoch


class ConsoleSink:
    """Print one line per epoch, used by verbose networks."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream

    def on_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        values = _numeric(metrics)
        prefix = f"layer {int(values.pop('layer'))} " if "layer" in values else ""
        parts = []
        for name, value in values.items():
            parts.append(f"{name}: {value}" if math.isnan(value) else f"{name}: {value:.6f}")
        print(f"{prefix}epoch {epoch} - " + " ".join(parts), file=self.stream or sys.stdout)

    __call__ = on_epoch


__all__ = ["ConsoleSink", "CsvSink", "JsonlSink"]
