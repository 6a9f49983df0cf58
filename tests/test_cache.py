import threading
import time

import pytest

from buildgraph import ArtifactCache, compute_fingerprint


def test_lookup_miss_then_hit():
    cache = ArtifactCache()
    assert cache.lookup("abc") == (False, None)

    cache.store("abc", {"jar": "plugin.jar"})
    assert cache.lookup("abc") == (True, {"jar": "plugin.jar"})


def test_store_overwrites_silently():
    cache = ArtifactCache()
    cache.store("fp", 1)
    cache.store("fp", 2)
    assert cache.lookup("fp") == (True, 2)


def test_entries_survive_a_new_cache_instance(tmp_path):
    ArtifactCache(tmp_path).store("deadbeef", ["a.class", "b.class"])

    fresh = ArtifactCache(tmp_path)
    assert fresh.lookup("deadbeef") == (True, ["a.class", "b.class"])

    fresh.invalidate("deadbeef")
    assert ArtifactCache(tmp_path).lookup("deadbeef") == (False, None)


def test_corrupt_entry_is_a_miss_and_is_removed(tmp_path):
    cache = ArtifactCache(tmp_path)
    path = tmp_path / "ba" / "badbad.pkl"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"not a pickle")

    assert cache.lookup("badbad") == (False, None)
    assert not path.exists()


def test_clear_removes_disk_entries(tmp_path):
    cache_dir = tmp_path / "cache"
    cache = ArtifactCache(cache_dir)
    cache.store("aa11", "x")
    cache.clear()

    assert not cache_dir.exists()
    assert "aa11" not in cache


def test_get_or_compute_runs_once_for_concurrent_callers():
    cache = ArtifactCache()
    calls = []
    started = threading.Event()

    def compute():
        calls.append(1)
        started.set()
        time.sleep(0.2)
        return "output"

    results = []

    def worker():
        results.append(cache.get_or_compute("fp", compute))

    first = threading.Thread(target=worker)
    first.start()
    started.wait(2)
    others = [threading.Thread(target=worker) for _ in range(3)]
    for t in others:
        t.start()
    for t in [first, *others]:
        t.join(5)

    assert len(calls) == 1
    assert sorted(results) == [(False, "output")] + [(True, "output")] * 3


def test_failed_computation_is_not_cached():
    cache = ArtifactCache()

    def boom():
        raise ValueError("compile error")

    with pytest.raises(ValueError):
        cache.get_or_compute("fp", boom)
    assert cache.lookup("fp") == (False, None)
    assert cache.get_or_compute("fp", lambda: 42) == (False, 42)


def test_force_bypasses_lookup_but_still_stores():
    cache = ArtifactCache()
    cache.store("fp", "old")

    assert cache.get_or_compute("fp", lambda: "new", force=True) == (False, "new")
    assert cache.lookup("fp") == (True, "new")


def test_fingerprint_tracks_file_content_and_config(tmp_path):
    src = tmp_path / "Main.java"
    src.write_text("class Main {}")

    base = compute_fingerprint("compile", [src], [], {"release": 21})
    assert base == compute_fingerprint("compile", [src], [], {"release": 21})
    assert base != compute_fingerprint("compile", [src], [], {"release": 17})
    assert base != compute_fingerprint("compile", [src], [], {"release": 21}, {"gen": "x"})

    src.write_text("class Main { int x; }")
    assert base != compute_fingerprint("compile", [src], [], {"release": 21})


class _HeldLookupCache(ArtifactCache):
    """Parks the lookup of the thread named ``late`` until released."""

    def __init__(self):
        super().__init__()
        self.missed = threading.Event()
        self.release = threading.Event()

    def lookup(self, fingerprint):
        result = super().lookup(fingerprint)
        if threading.current_thread().name == "late":
            self.missed.set()
            self.release.wait(2)
        return result


def test_caller_that_missed_during_computation_reuses_its_result():
    cache = _HeldLookupCache()
    calls = []
    results = {}

    def compute_a():
        calls.append("A")
        cache.missed.wait(2)
        return "A"

    def compute_b():
        calls.append("B")
        return "B"

    first = threading.Thread(
        target=lambda: results.setdefault("first", cache.get_or_compute("fp", compute_a))
    )
    late = threading.Thread(
        name="late",
        target=lambda: results.setdefault("late", cache.get_or_compute("fp", compute_b)),
    )
    first.start()
    late.start()
    first.join(5)
    cache.release.set()
    late.join(5)

    assert calls == ["A"]
    assert results == {"first": (False, "A"), "late": (True, "A")}
