"""Headless-safe plotting adapters."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Tuple


class PlotAdapter:
    """Collect epoch errors and optionally draw them with matplotlib.

    Curves are keyed by phase, with one curve per pretrained layer.
    """

    def __init__(self, run_dir: str | Path, enable_plots: bool = False, *, phase: str = "fine_tune"):
        self.enable_plots = enable_plots
        self.run_dir = Path(run_dir)
        self.phase = phase
        self._history: Dict[str, List[Tuple[int, float]]] = {}
        if self.enable_plots:
            self.run_dir.mkdir(parents=True, exist_ok=True)

    def for_phase(self, phase: str) -> "PlotAdapter":
        """Adapter sharing this history but tagging points with ``phase``."""

        other = PlotAdapter(self.run_dir, self.enable_plots, phase=phase)
        other._history = self._history
        return other

    def on_epoch(self, epoch: int, metrics):
        if not self.enable_plots or "error" not in metrics:
            return
        key = self.phase
        if "layer" in metrics:
            key = f"{self.phase} layer {int(metrics['layer'])}"
        self._history.setdefault(key, []).append((epoch, float(metrics["error"])))

    def close(self) -> str | None:
        if not self.enable_plots or not self._history:
            return None
        import matplotlib

        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # imported lazily for headless safety

        fig, ax = plt.subplots()
        for label, points in sorted(self._history.items()):
            epochs, errors = zip(*points)
            ax.plot(epochs, errors, label=label)
        ax.set_xlabel("Epoch")
        ax.set_ylabel("Error")
        ax.set_title("Training error")
        ax.legend()
        plot_path = self.run_dir / "error.png"
        fig.savefig(plot_path)
        plt.close(fig)
        return str(plot_path)

    __call__ = on_epoch
