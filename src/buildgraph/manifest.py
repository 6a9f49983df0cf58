"""Packaging boundary.

The core never interprets the descriptor. It hands the ordered outputs of a
successful build plus whatever descriptor the caller supplied to an emitter.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Protocol, runtime_checkable

import yaml

from .logging import get_logger


log = get_logger("buildgraph.manifest")


@runtime_checkable
class ManifestEmitter(Protocol):
    def emit(self, outputs: Mapping[str, Any], descriptor: Any) -> Any: ...


@dataclass
class ArtifactDescriptor:
    name: str
    version: str
    entry_point: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {"name": self.name, "version": self.version, "main": self.entry_point}
        data.update(self.metadata)
        return data


def _as_mapping(descriptor: Any) -> dict:
    if descriptor is None:
        return {}
    to_dict = getattr(descriptor, "to_dict", None)
    if callable(to_dict):
        return dict(to_dict())
    if isinstance(descriptor, Mapping):
        return dict(descriptor)
    raise TypeError(f"Cannot serialise descriptor of type {type(descriptor).__name__}")


class YamlManifestEmitter:
    """Writes the descriptor as a YAML manifest, e.g. a server plugin's ``plugin.yml``."""

    def __init__(self, path: Path | str, list_artifacts: bool = True):
        self.path = Path(path)
        self.list_artifacts = list_artifacts

    def emit(self, outputs: Mapping[str, Any], descriptor: Any) -> Path:
        data = _as_mapping(descriptor)
        if self.list_artifacts:
            data["artifacts"] = list(outputs)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False)
        log.info("Wrote manifest %s (%d artifact(s))", self.path, len(outputs))
        return self.path
