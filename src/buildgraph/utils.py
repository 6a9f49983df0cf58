"""Small helpers for reading nested params and resolving task input paths."""

from __future__ import annotations

import glob
import os
from pathlib import Path
from typing import Dict, List


def _get(d: Dict, *keys, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
        if cur is None:
            return default
    return cur


def slugify(s: str) -> str:
    return (
        (s or "").strip().lower().replace(" ", "_").replace("/", "-").replace("\\", "-")
    )


def resolve_paths(paths_spec, params: dict) -> List[str]:
    """Resolve a static list of paths or a callable(params) into a list[str]."""
    if callable(paths_spec):
        paths = paths_spec(params)
    else:
        paths = paths_spec
    if paths is None:
        return []
    return [str(p) for p in paths]


def expand_globs(patterns: List[str]) -> List[Path]:
    paths: List[Path] = []
    for pat in patterns:
        if any(ch in pat for ch in "*?["):
            # `*` stays inside one directory, `**` spans any depth
            matches = glob.glob(pat, recursive=True)
            paths.extend(Path(m) for m in matches if os.path.isfile(m))
        else:
            paths.append(Path(pat))
    return sorted(paths)
