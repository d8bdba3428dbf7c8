"""Download-once cache for dataset archives."""

from __future__ import annotations

import hashlib
import json
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Iterable, Mapping

MANIFEST_NAME = "manifest.json"


class CacheError(RuntimeError):
    """Raised when an archive cannot be fetched or fails validation."""


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _record(cache_dir: Path, name: str, record: Mapping[str, object]) -> None:
    path = cache_dir / MANIFEST_NAME
    try:
        data = json.loads(path.read_text()) if path.exists() else {}
    except json.JSONDecodeError:
        data = {}
    data[name] = dict(record, recorded_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()))
    path.write_text(json.dumps(data, indent=2, sort_keys=True))


def fetch(
    name: str,
    url: str,
    *,
    cache_dir: Path,
    checksum: str | None = None,
    filename: str | None = None,
    mirrors: Iterable[str] | None = None,
    retries: int = 2,
) -> tuple[Path, Mapping[str, object]]:
    """Return a local copy of ``url``, downloading it into ``cache_dir`` once."""

    target = cache_dir / (filename or Path(url).name)
    if target.exists():
        digest = _sha256(target)
        if checksum is None or digest == checksum:
            record = {"name": name, "url": url, "local_path": str(target), "checksum": digest, "mode": "cache"}
            _record(cache_dir, name, record)
            return target, record
        target.unlink()

    last_error: Exception | None = None
    for source in [url, *(mirrors or [])]:
        for attempt in range(retries + 1):
            try:
                with urllib.request.urlopen(source) as response, target.open("wb") as handle:
                    handle.write(response.read())
            except (urllib.error.URLError, OSError) as exc:
                last_error = exc
                target.unlink(missing_ok=True)
                time.sleep(min(2**attempt, 5))
                continue
            digest = _sha256(target)
            if checksum and digest != checksum:
                target.unlink()
                raise CacheError(f"Checksum mismatch for {name!r}: {digest} != {checksum}")
            record = {"name": name, "url": source, "local_path": str(target), "checksum": digest, "mode": "download"}
            _record(cache_dir, name, record)
            return target, record

    raise CacheError(f"Failed to fetch {name!r}: {last_error}")


__all__ = ["CacheError", "fetch"]
