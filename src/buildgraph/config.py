from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError
from .utils import _get


_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}

# camelCase spellings accepted in YAML alongside the field names
_ALIASES = {
    "workerCount": "worker_count",
    "workers": "worker_count",
    "failFast": "fail_fast",
    "cacheDir": "cache_dir",
    "timeoutPerTask": "timeout_per_task",
    "timeout": "timeout_per_task",
    "runsDir": "runs_dir",
}

_ENV = {
    "BUILDGRAPH_WORKERS": "worker_count",
    "BUILDGRAPH_FAIL_FAST": "fail_fast",
    "BUILDGRAPH_CACHE_DIR": "cache_dir",
    "BUILDGRAPH_TIMEOUT": "timeout_per_task",
}


def parse_duration(value: Any) -> Optional[float]:
    """Seconds from a number or a string such as ``500ms``, ``30s``, ``5m``."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _DURATION.match(str(value))
        if not m:
            raise ConfigError(f"Invalid duration: {value!r}")
        seconds = float(m.group(1)) * _UNITS[m.group(2)]
    if seconds <= 0:
        raise ConfigError(f"Duration must be positive: {value!r}")
    return seconds


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"Invalid boolean: {value!r}")


def default_worker_count() -> int:
    return os.cpu_count() or 1


@dataclass
class RunConfig:
    worker_count: int = field(default_factory=default_worker_count)
    fail_fast: bool = False
    cache_dir: Optional[Path] = None
    timeout_per_task: Optional[float] = None
    retries: int = 0
    runs_dir: Optional[Path] = None

    def __post_init__(self):
        try:
            self.worker_count = int(self.worker_count)
            self.retries = int(self.retries)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid integer option: {e}") from e
        if self.worker_count < 1:
            raise ConfigError(f"workerCount must be >= 1, got {self.worker_count}")
        if self.retries < 0:
            raise ConfigError(f"retries must be >= 0, got {self.retries}")
        self.fail_fast = _parse_bool(self.fail_fast)
        self.timeout_per_task = parse_duration(self.timeout_per_task)
        if self.cache_dir is not None:
            self.cache_dir = Path(self.cache_dir)
        if self.runs_dir is not None:
            self.runs_dir = Path(self.runs_dir)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "RunConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in (data or {}).items():
            name = _ALIASES.get(key, key)
            if name not in known:
                raise ConfigError(f"Unknown build option: {key}")
            if value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    def with_overrides(self, **overrides) -> "RunConfig":
        """Copy with every non-None override applied."""
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return RunConfig(**values)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "RunConfig":
        environ = os.environ if environ is None else environ
        return self.with_overrides(
            **{name: environ.get(var) or None for var, name in _ENV.items()}
        )


def load_config(path: str | Path | None) -> Tuple[RunConfig, dict]:
    """Read a YAML build config into ``(RunConfig, params)``.

    The ``build`` section holds scheduler options, ``params`` is handed to tasks
    untouched. A missing path yields defaults.
    """
    if path is None:
        return RunConfig(), {}
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    try:
        with open(p, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {p}")
    build = _get(raw, "build", default={})
    params = _get(raw, "params", default={})
    if not isinstance(build, dict) or not isinstance(params, dict):
        raise ConfigError(f"`build` and `params` must be mappings: {p}")
    return RunConfig.from_mapping(build), params
