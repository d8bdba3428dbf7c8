"""Deep belief network container."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Callable, Iterable, List, Sequence

import numpy as np

from .core.layers import Layer
from .core.strategies import FineTuneStrategy, PretrainStrategy
from .core.types import Array, NetworkDescription
from .reporting.metrics import ConsoleSink
from .timers import NullTimerRegistry, TimerRegistry
from .training.batching import BatchScheduler, is_single_pass, iter_big_batches
from .training.metrics import class_indices, one_hot
from .training.trainer import (
    LayerTrainer,
    Trainer,
    make_optimizer,
    resolve_pretrainer,
    resolve_trainer,
)


@dataclass
class NetworkConfig:
    """Network-wide hyperparameters.

    The fields may be changed between training calls; they are validated at
    the start of every call.
    """

    batch_size: int = 10
    big_batch_size: int = 1
    learning_rate: float = 0.1
    momentum: bool = True
    initial_momentum: float = 0.5
    final_momentum: float = 0.9
    final_momentum_epoch: int = 6
    weight_decay: float = 0.0
    trainer: str | FineTuneStrategy = "sgd"
    pretrainer: str | PretrainStrategy = "cd"
    loss: str = "auto"
    fine_tune_layers: int | None = None
    parallel: bool = False
    workers: int | None = None
    memory: bool = False
    n_labels: int | None = None
    seed: int = 0
    verbose: bool = False

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be positive")
        if self.big_batch_size < 1:
            raise ValueError("big_batch_size must be positive")
        if self.learning_rate <= 0:
            raise ValueError("learning_rate must be positive")
        if self.weight_decay < 0:
            raise ValueError("weight_decay must be non-negative")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be positive")
        if self.fine_tune_layers is not None and self.fine_tune_layers < 1:
            raise ValueError("fine_tune_layers must be positive")
        if self.n_labels is not None and self.n_labels < 1:
            raise ValueError("n_labels must be positive")

    def momentum_at(self, epoch: int) -> float:
        if not self.momentum:
            return 0.0
        return self.initial_momentum if epoch < self.final_momentum_epoch else self.final_momentum


_CONFIG_FIELDS = {f.name for f in fields(NetworkConfig)}


class DBN:
    """Ordered stack of layers trained greedily then fine-tuned jointly.

    The layer sequence is fixed once the network is built. Consecutive
    dimensions, unit placement and weight types are checked eagerly; dynamic
    layers are checked as soon as :meth:`init_layer` gives them a size and
    again before any training call.
    """

    def __init__(
        self,
        layers: Sequence[Layer],
        config: NetworkConfig | None = None,
        *,
        timers: TimerRegistry | None = None,
        callbacks: Sequence[object] | None = None,
        **overrides: object,
    ) -> None:
        if not layers:
            raise ValueError("A network needs at least one layer")
        unknown = set(overrides) - _CONFIG_FIELDS
        if unknown:
            raise TypeError(f"Unknown network options: {', '.join(sorted(unknown))}")
        self.layers = tuple(layers)
        self.config = replace(config or NetworkConfig(), **overrides)
        self.config.validate()
        self.timers = timers or NullTimerRegistry()
        self.callbacks = list(callbacks or [])
        if self.config.verbose:
            self.callbacks.append(ConsoleSink())
        self.validate(strict=False)

    # ------------------------------------------------------------------
    # Topology

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, index: int) -> Layer:
        return self.layers[index]

    @property
    def input_size(self) -> int | None:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int | None:
        return self.layers[-1].output_size

    @property
    def dtype(self) -> type:
        return self.layers[0].dtype  # type: ignore[attr-defined]

    def describe(self) -> NetworkDescription:
        return NetworkDescription(
            layer_dims=[(layer.input_size, layer.output_size) for layer in self.layers],
            n_labels=self.config.n_labels,
        )

    def init_layer(self, index: int, n_in: int, n_out: int) -> None:
        """Give dynamic layer ``index`` its dimensions and re-check the chain."""

        self.layers[index].init_layer(n_in, n_out)
        self.validate(strict=False)

    def validate(self, strict: bool = True, *, n_labels: int | None = None) -> None:
        """Check the layer chain.

        With ``strict`` every layer must have known dimensions; otherwise pairs
        involving a dynamic layer that is not set up yet are skipped. The top
        layer must take ``n_labels`` extra inputs (default: the configured
        count) on top of the layer below.
        """

        last = len(self.layers) - 1
        if n_labels is None:
            n_labels = self.config.n_labels
        if n_labels is not None and last < 1:
            raise ValueError("Label mode needs at least two layers")

        dtypes = {np.dtype(layer.dtype) for layer in self.layers}  # type: ignore[attr-defined]
        if len(dtypes) > 1:
            raise ValueError("All layers must share the same weight type")

        for idx, layer in enumerate(self.layers):
            if strict and (layer.input_size is None or layer.output_size is None):
                raise ValueError(f"Layer {idx} is dynamic and has not been initialised")
            if getattr(layer, "visible", None) == "softmax":
                raise ValueError(f"Layer {idx}: softmax visible units are not supported")
            if idx < last and layer.activation_name == "softmax":
                raise ValueError(
                    f"Layer {idx}: softmax units are only valid on the last layer"
                )

        for idx in range(last):
            out_size = self.layers[idx].output_size
            in_size = self.layers[idx + 1].input_size
            if out_size is None or in_size is None:
                continue
            expected = out_size
            if n_labels is not None and idx + 1 == last:
                expected = out_size + n_labels
            if in_size != expected:
                raise ValueError(
                    f"Layer {idx + 1} expects {in_size} inputs but layer {idx} "
                    f"produces {expected}"
                    + (f" (with {n_labels} labels)" if expected != out_size else "")
                )

        if n_labels is not None and not getattr(self.layers[-1], "pretrainable", False):
            raise ValueError("Label mode needs an RBM as the top layer")

    # ------------------------------------------------------------------
    # Forward use

    def _as_matrix(self, inputs: Array | Iterable) -> tuple[Array, bool]:
        if not isinstance(inputs, np.ndarray):
            inputs = list(inputs)
        x = np.asarray(inputs, dtype=self.dtype)
        if x.size == 0:
            return np.empty((0, int(self.input_size or 0)), dtype=self.dtype), False
        single = x.ndim == 1
        if single:
            x = x.reshape(1, -1)
        return x.reshape(x.shape[0], -1), single

    def _lower(self, x: Array, stop: int) -> Array:
        for layer in self.layers[:stop]:
            x = layer.activate(x)
        return x

    def activate(self, inputs: Array | Iterable) -> Array:
        """Output of the last layer; one row per input, or a vector for one sample.

        In label mode the label units are clamped to the uniform distribution.
        """

        x, single = self._as_matrix(inputs)
        if self.config.n_labels is not None:
            hidden = self._lower(x, len(self.layers) - 1)
            uniform = np.full(
                (hidden.shape[0], self.config.n_labels),
                1.0 / self.config.n_labels,
                dtype=self.dtype,
            )
            out = self.layers[-1].activate(np.hstack([hidden, uniform]))
        else:
            out = self._lower(x, len(self.layers))
        return out[0] if single else out

    def features(self, inputs: Array | Iterable, layer: int | None = None) -> Array:
        """Activations after ``layer`` (default: the last layer)."""

        if layer is None:
            return self.activate(inputs)
        x, single = self._as_matrix(inputs)
        out = self._lower(x, layer + 1)
        return out[0] if single else out

    def predict(self, inputs: Array | Iterable) -> Array:
        """Class index per input: argmax of the final activation."""

        if self.config.n_labels is not None:
            return self.predict_labels(inputs)
        out = self.activate(inputs)
        return np.argmax(out, axis=-1)

    def predict_labels(self, inputs: Array | Iterable, method: str = "free_energy") -> Array:
        """Predict labels with the joint top layer of a label-mode network.

        ``free_energy`` picks the label whose clamped visible vector has the
        lowest free energy; ``reconstruction`` runs one up-down pass with the
        label units at 0.1 and picks the most active reconstructed label.
        """

        n_labels = self.config.n_labels
        if n_labels is None:
            raise ValueError("predict_labels requires a network trained with labels")
        x, single = self._as_matrix(inputs)
        hidden = self._lower(x, len(self.layers) - 1)
        top = self.layers[-1]
        n = hidden.shape[0]
        if method == "free_energy":
            energies = np.empty((n, n_labels), dtype=np.float64)
            for label in range(n_labels):
                clamp = np.zeros((n, n_labels), dtype=self.dtype)
                clamp[:, label] = 1.0
                energies[:, label] = top.free_energy(np.hstack([hidden, clamp]))
            labels = np.argmin(energies, axis=1)
        elif method == "reconstruction":
            clamp = np.full((n, n_labels), 0.1, dtype=self.dtype)
            reconstruction = top.reconstruct(np.hstack([hidden, clamp]))
            labels = np.argmax(reconstruction[:, -n_labels:], axis=1)
        else:
            raise ValueError(f"Unknown label prediction method: {method}")
        return labels[0] if single else labels

    def prepare_one_output(self) -> Array:
        """Zeroed buffer shaped like the output of one sample."""

        if self.output_size is None:
            raise ValueError("The last layer has not been initialised")
        return np.zeros(self.output_size, dtype=self.dtype)

    # ------------------------------------------------------------------
    # Training

    def _check_dataset(
        self, inputs: Array | Iterable, name: str = "inputs", *, stream: bool | None = None
    ) -> Array | Iterable:
        """Materialise ``inputs`` unless streaming; reject empty datasets."""

        if stream is None:
            stream = self.config.memory
        if stream:
            if is_single_pass(inputs):
                raise ValueError(
                    f"Memory mode re-reads the {name} every epoch; pass a re-iterable "
                    "container instead of an iterator"
                )
            if next(iter(inputs), None) is None:
                raise ValueError(f"Cannot train on an empty dataset ({name})")
            return inputs
        x, _ = self._as_matrix(inputs)
        if x.shape[0] == 0:
            raise ValueError(f"Cannot train on an empty dataset ({name})")
        return x

    def _check_labels(self, inputs: Array | Iterable, labels: Array | Iterable) -> Array | Iterable:
        if self.config.memory:
            return self._check_dataset(labels, "labels")
        if not isinstance(labels, np.ndarray):
            labels = list(labels)
        labels = np.asarray(labels)
        if labels.shape[0] != inputs.shape[0]:  # type: ignore[union-attr]
            raise ValueError(
                f"Got {inputs.shape[0]} inputs but {labels.shape[0]} labels"  # type: ignore[union-attr]
            )
        width = int(self.output_size)
        if labels.ndim > 2 or (labels.ndim == 2 and labels.shape[1] not in (1, width)):
            raise ValueError(
                f"Labels must be class indices or one-hot rows of width {width}, "
                f"got shape {labels.shape}"
            )
        one_hot(labels, width)
        return labels

    def _propagator(self, stop: int) -> Callable[[Array], Array] | None:
        if stop == 0:
            return None
        return lambda block: self._lower(block, stop)

    def _stream_mean(self, inputs: Iterable, transform: Callable[[Array], Array] | None) -> Array:
        total = None
        count = 0
        for block, _ in iter_big_batches(
            inputs, None, self.config.batch_size, self.config.big_batch_size, dtype=self.dtype
        ):
            if transform is not None:
                block = transform(block)
            total = block.sum(axis=0) if total is None else total + block.sum(axis=0)
            count += block.shape[0]
        return total / count

    def _pretrain_layer(
        self,
        index: int,
        data: Array | Iterable,
        epochs: int,
        callbacks: Sequence[object],
        transform: Callable[[Array], Array] | None = None,
        stream: bool | None = None,
    ) -> float:
        stream = self.config.memory if stream is None else stream
        layer = self.layers[index]
        if getattr(layer, "init_weights", False):
            if stream:
                mean = self._stream_mean(data, transform)
            else:
                mean = np.mean(data, axis=0)
            layer.init_visible_bias(mean[None, :])  # type: ignore[attr-defined]
        trainer = LayerTrainer(
            layer,  # type: ignore[arg-type]
            resolve_pretrainer(self.config.pretrainer),
            index=index,
            callbacks=[*self.callbacks, *callbacks],
            timers=self.timers,
            parallel=self.config.parallel,
            workers=self.config.workers,
            seed=self.config.seed + index,
        )
        scheduler = BatchScheduler(
            layer.batch_size,  # type: ignore[attr-defined]
            big_batch_size=self.config.big_batch_size,
            memory=stream,
        )
        with self.timers.time("pretrain:layer"):
            return trainer.run(data, epochs, scheduler, transform=transform)

    def pretrain(
        self,
        inputs: Array | Iterable,
        epochs: int,
        *,
        callbacks: Sequence[object] | None = None,
    ) -> List[float]:
        """Greedy layer-wise contrastive divergence.

        Each RBM is trained on the activations of the layers below it. Dense
        layers are not pretrained but still transform the data for the layers
        above. Returns the final reconstruction error of every trained layer.
        """

        self.config.validate()
        self.validate(strict=True)
        if not any(getattr(layer, "pretrainable", False) for layer in self.layers):
            raise ValueError("The network has no layer that supports pretraining")
        if self.config.n_labels is not None:
            raise ValueError("Label-mode networks are trained with train_with_labels")
        if epochs < 1:
            raise ValueError("epochs must be positive")

        data = self._check_dataset(inputs)
        errors: List[float] = []
        with self.timers.time("pretrain"):
            current = data
            for index, layer in enumerate(self.layers):
                if layer.pretrainable:
                    if self.config.memory:
                        error = self._pretrain_layer(
                            index, data, epochs, callbacks or [], self._propagator(index)
                        )
                    else:
                        error = self._pretrain_layer(index, current, epochs, callbacks or [])
                    errors.append(error)
                if not self.config.memory and index < len(self.layers) - 1:
                    current = layer.activate(current)
        return errors

    def fine_tune(
        self,
        inputs: Array | Iterable,
        labels: Array | Iterable,
        epochs: int,
        *,
        callbacks: Sequence[object] | None = None,
    ) -> float:
        """Supervised training of the whole stack.

        Returns the mean classification error of the final epoch. A run that
        diverges returns NaN instead of raising.
        """

        self.config.validate()
        self.validate(strict=True)
        if self.config.n_labels is not None:
            raise ValueError("Label-mode networks are trained with train_with_labels")
        if epochs < 1:
            raise ValueError("epochs must be positive")

        data = self._check_dataset(inputs)
        targets = self._check_labels(data, labels)
        optimizer = make_optimizer(
            self.config.trainer,
            lr=self.config.learning_rate,
            weight_decay=self.config.weight_decay,
        )
        strategy = self.config.trainer
        if isinstance(strategy, str):
            strategy = resolve_trainer(strategy, trainable=self.config.fine_tune_layers)
        trainer = Trainer(
            self.layers,
            strategy,
            optimizer,
            loss=self.config.loss,
            momentum=self.config.momentum_at,
            callbacks=[*self.callbacks, *(callbacks or [])],
            timers=self.timers,
            parallel=self.config.parallel,
            workers=self.config.workers,
        )
        scheduler = BatchScheduler(
            self.config.batch_size,
            big_batch_size=self.config.big_batch_size,
            memory=self.config.memory,
        )
        with self.timers.time("fine_tune"):
            return trainer.run(data, targets, epochs, scheduler)

    def train_with_labels(
        self,
        inputs: Array | Iterable,
        labels: Array | Iterable,
        n_labels: int,
        epochs: int,
        *,
        callbacks: Sequence[object] | None = None,
    ) -> List[float]:
        """Pretrain with the labels joined to the input of the top RBM.

        The top layer then models inputs and labels jointly; use
        :meth:`predict_labels` (or ``label_predictor()``) to classify.
        """

        if n_labels < 1:
            raise ValueError("n_labels must be positive")
        if self.config.n_labels is None:
            self.validate(strict=True, n_labels=n_labels)
        elif self.config.n_labels != n_labels:
            raise ValueError(
                f"Network was built for {self.config.n_labels} labels, got {n_labels}"
            )
        self.config.n_labels = n_labels
        self.config.validate()
        self.validate(strict=True)
        if epochs < 1:
            raise ValueError("epochs must be positive")

        data = self._check_dataset(inputs, stream=False)
        targets = np.asarray(list(labels) if not isinstance(labels, np.ndarray) else labels)
        if targets.shape[0] != data.shape[0]:
            raise ValueError(f"Got {data.shape[0]} inputs but {targets.shape[0]} labels")
        label_block = one_hot(class_indices(targets), n_labels, dtype=self.dtype)

        top = len(self.layers) - 1
        errors: List[float] = []
        with self.timers.time("train_with_labels"):
            current = data
            for index, layer in enumerate(self.layers):
                if index == top:
                    current = np.hstack([current, label_block])
                if layer.pretrainable:
                    errors.append(
                        self._pretrain_layer(index, current, epochs, callbacks or [], stream=False)
                    )
                if index < top:
                    current = layer.activate(current)
        return errors


__all__ = ["DBN", "NetworkConfig"]
