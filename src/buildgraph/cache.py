from __future__ import annotations

import hashlib
import json
import pickle
import shutil
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .errors import CacheCorruptionError
from .logging import get_logger


log = get_logger("buildgraph.cache")


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _path_entries(paths: Iterable[Path]) -> list:
    entries = []
    for p in sorted({str(p) for p in paths}):
        pp = Path(p)
        entry = {"path": p}
        if pp.exists() and pp.is_file():
            entry["digest"] = file_digest(pp)
        else:
            entry["digest"] = None
        entries.append(entry)
    return entries


def compute_fingerprint(
    name: str,
    input_paths: Iterable[Path],
    code_paths: Iterable[Path],
    config: Optional[dict],
    dep_fingerprints: Optional[Mapping[str, str]] = None,
) -> str:
    payload: dict = {
        "name": name,
        "inputs": _path_entries(input_paths),
        "code": _path_entries(code_paths),
        "config": config,
        "deps": dict(sorted((dep_fingerprints or {}).items())),
    }
    data = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return sha256_bytes(data)


class ArtifactCache:
    """Task outputs keyed by fingerprint.

    Entries live in memory and, when ``cache_dir`` is given, are pickled to
    ``<cache_dir>/<fp[:2]>/<fp>.pkl`` so they survive across runs.
    """

    def __init__(self, cache_dir: Path | str | None = None):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self._entries: Dict[str, Any] = {}
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()

    def _entry_path(self, fingerprint: str) -> Path:
        assert self.cache_dir is not None
        return self.cache_dir / fingerprint[:2] / f"{fingerprint}.pkl"

    def _read(self, fingerprint: str) -> Tuple[bool, Any]:
        if self.cache_dir is None:
            return False, None
        path = self._entry_path(fingerprint)
        if not path.exists():
            return False, None
        try:
            with open(path, "rb") as f:
                return True, pickle.load(f)
        except Exception as e:  # noqa: BLE001
            raise CacheCorruptionError(f"Unreadable cache entry {path}: {e}") from e

    def _write(self, fingerprint: str, output: Any) -> None:
        if self.cache_dir is None:
            return
        path = self._entry_path(fingerprint)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "wb") as f:
            pickle.dump(output, f)
        tmp.replace(path)

    def lookup(self, fingerprint: str) -> Tuple[bool, Any]:
        """Return ``(hit, output)``. A corrupt disk entry counts as a miss."""
        with self._lock:
            if fingerprint in self._entries:
                return True, self._entries[fingerprint]
        try:
            hit, output = self._read(fingerprint)
        except CacheCorruptionError as e:
            log.warning("%s; treating as cache miss", e)
            self.invalidate(fingerprint)
            return False, None
        if hit:
            with self._lock:
                self._entries[fingerprint] = output
        return hit, output

    def store(self, fingerprint: str, output: Any) -> None:
        with self._lock:
            self._entries[fingerprint] = output
        try:
            self._write(fingerprint, output)
        except (OSError, pickle.PicklingError, TypeError, AttributeError) as e:
            # Unpicklable outputs stay memory-only for this process
            log.warning("Could not persist cache entry %s: %s", fingerprint[:12], e)

    def invalidate(self, fingerprint: str) -> None:
        with self._lock:
            self._entries.pop(fingerprint, None)
        if self.cache_dir is not None:
            self._entry_path(fingerprint).unlink(missing_ok=True)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        if self.cache_dir is not None and self.cache_dir.exists():
            shutil.rmtree(self.cache_dir)

    def __contains__(self, fingerprint: str) -> bool:
        return self.lookup(fingerprint)[0]

    def get_or_compute(
        self, fingerprint: str, compute: Callable[[], Any], force: bool = False
    ) -> Tuple[bool, Any]:
        """Return ``(cached, output)``, computing at most once per fingerprint.

        Concurrent callers for a fingerprint that is already being computed
        wait for that computation and share its result or its exception.
        Failed computations are never stored.
        """
        if not force:
            hit, output = self.lookup(fingerprint)
            if hit:
                return True, output

        with self._lock:
            # A computation may have finished between the lookup and here
            if not force and fingerprint in self._entries:
                return True, self._entries[fingerprint]
            inflight = self._inflight.get(fingerprint)
            owner = inflight is None
            if owner:
                inflight = Future()
                self._inflight[fingerprint] = inflight

        if not owner:
            return True, inflight.result()

        try:
            output = compute()
        except BaseException as e:
            inflight.set_exception(e)
            raise
        else:
            self.store(fingerprint, output)
            inflight.set_result(output)
            return False, output
        finally:
            with self._lock:
                self._inflight.pop(fingerprint, None)
