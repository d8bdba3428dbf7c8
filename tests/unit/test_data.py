from __future__ import annotations

import hashlib
import json

import numpy as np
import pytest

from beliefnets.data import RowStream, available_datasets, get_dataset, register_dataset
from beliefnets.data.cache import CacheError, fetch
from beliefnets.data.prototypes import noisy_prototypes
from beliefnets.data.registry import DatasetSpec, DataSpec
from beliefnets.data.utils import binarize, deterministic_split, normalize, standardize


def test_builtin_datasets_are_registered():
    assert {"digits", "mnist", "prototypes"} <= set(available_datasets())
    with pytest.raises(KeyError, match="Unknown dataset"):
        get_dataset("imagenet")


def test_prototypes_are_deterministic_and_binary():
    a = get_dataset("prototypes", n_samples=100, seed=3)
    b = get_dataset("prototypes", n_samples=100, seed=3)
    x_a, y_a = a.split("train")
    x_b, y_b = b.split("train")
    np.testing.assert_array_equal(x_a, x_b)
    np.testing.assert_array_equal(y_a, y_b)
    assert set(np.unique(x_a)) <= {0.0, 1.0}
    assert a.splits == {"train": 80, "test": 20}
    with pytest.raises(KeyError):
        a.split("val")


def test_noisy_prototypes_flip_rate():
    x, y = noisy_prototypes(2000, 32, 2, flip_prob=0.1, seed=0)
    centres = np.stack([np.round(x[y == c].mean(axis=0)) for c in range(2)])
    flip_rate = float(np.mean(x != centres[y]))
    assert 0.07 < flip_rate < 0.13
    with pytest.raises(ValueError):
        noisy_prototypes(10, 4, 2, flip_prob=0.6)


def test_digits_dataset_from_sklearn():
    spec = get_dataset("digits", preprocess="binarize")
    x, y = spec.split("train")
    assert x.shape[1] == spec.data_spec.d_in == 64
    assert set(np.unique(x)) <= {0.0, 1.0}
    assert spec.data_spec.num_classes == 10
    assert sum(spec.splits.values()) == 1797


def test_mnist_offline_stand_in():
    spec = get_dataset("mnist", offline=True, offline_samples=50, test_split=0.2)
    x, _ = spec.split("train")
    assert x.shape == (40, 784)
    assert 0.0 <= x.min() and x.max() <= 1.0
    assert spec.provenance["mode"] == "offline"


def test_register_dataset_validates_specs():
    @register_dataset("broken-labels")
    def _broken(**_):
        x = np.zeros((3, 2), dtype=np.float32)
        return DatasetSpec(
            name="broken-labels",
            arrays={"train": (x, np.array([0, 1, 5]))},
            data_spec=DataSpec(d_in=2, num_classes=2),
            provenance={},
        )

    with pytest.raises(ValueError, match="labels outside"):
        get_dataset("broken-labels")


def test_split_and_preprocessing_helpers():
    split = deterministic_split(10, val_split=0.2, test_split=0.2, seed=1)
    assert split.sizes == {"train": 6, "val": 2, "test": 2}
    joined = np.sort(np.concatenate([split.train, split.val, split.test]))
    np.testing.assert_array_equal(joined, np.arange(10))
    with pytest.raises(ValueError):
        deterministic_split(10, val_split=0.5, test_split=0.5)

    np.testing.assert_allclose(normalize(np.array([0.0, 128.0, 255.0])), [0.0, 128 / 255, 1.0], rtol=1e-6)
    np.testing.assert_array_equal(binarize(np.array([0.2, 0.6])), [0.0, 1.0])
    scaled, mean, std = standardize(np.array([[1.0, 5.0], [3.0, 5.0]]))
    np.testing.assert_allclose(scaled, [[-1.0, 0.0], [1.0, 0.0]])


def test_row_stream_is_re_iterable():
    rows = np.arange(6).reshape(3, 2)
    stream = RowStream(rows)
    assert len(stream) == 3
    assert [r.tolist() for r in stream] == [[0, 1], [2, 3], [4, 5]]
    assert [r.tolist() for r in stream] == [[0, 1], [2, 3], [4, 5]]


def test_fetch_caches_local_archive_and_records_manifest(tmp_path):
    source = tmp_path / "remote" / "archive.bin"
    source.parent.mkdir()
    source.write_bytes(b"belief")
    checksum = hashlib.sha256(b"belief").hexdigest()
    cache_dir = tmp_path / "cache"
    cache_dir.mkdir()

    path, record = fetch("toy", source.as_uri(), cache_dir=cache_dir, checksum=checksum)
    assert path == cache_dir / "archive.bin"
    assert path.read_bytes() == b"belief"
    assert record["mode"] == "download"

    _, again = fetch("toy", source.as_uri(), cache_dir=cache_dir, checksum=checksum)
    assert again["mode"] == "cache"
    manifest = json.loads((cache_dir / "manifest.json").read_text())
    assert manifest["toy"]["checksum"] == checksum

    with pytest.raises(CacheError, match="Checksum mismatch"):
        fetch("bad", source.as_uri(), cache_dir=cache_dir, checksum="0" * 64, filename="bad.bin")
    assert not (cache_dir / "bad.bin").exists()
