"""In-process build orchestration core.

Provides a task graph with cycle detection, a parallel scheduler, a
fingerprint-keyed artifact cache, a manifest emitter boundary and a Typer CLI.
"""

from .cache import ArtifactCache, compute_fingerprint
from .config import RunConfig, load_config
from .core import Build, TaskSpec, graph_from_specs, task
from .errors import (
    BuildGraphError,
    CacheCorruptionError,
    ConfigError,
    CycleError,
    DuplicateTaskError,
    TaskExecutionError,
    TaskTimeoutError,
    UnknownDependencyError,
)
from .graph import Task, TaskGraph, TaskStatus
from .manifest import ArtifactDescriptor, ManifestEmitter, YamlManifestEmitter
from .scheduler import (
    CancellationToken,
    RunReport,
    RunStatus,
    Scheduler,
    TaskContext,
    TaskResult,
)

__all__ = [
    "ArtifactCache",
    "ArtifactDescriptor",
    "Build",
    "BuildGraphError",
    "CacheCorruptionError",
    "CancellationToken",
    "ConfigError",
    "CycleError",
    "DuplicateTaskError",
    "ManifestEmitter",
    "RunConfig",
    "RunReport",
    "RunStatus",
    "Scheduler",
    "Task",
    "TaskContext",
    "TaskExecutionError",
    "TaskGraph",
    "TaskResult",
    "TaskSpec",
    "TaskStatus",
    "TaskTimeoutError",
    "UnknownDependencyError",
    "YamlManifestEmitter",
    "compute_fingerprint",
    "graph_from_specs",
    "load_config",
    "task",
]
