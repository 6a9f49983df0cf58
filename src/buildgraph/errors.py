"""Exception taxonomy for graph building, task execution and the artifact cache."""

from __future__ import annotations

from typing import Sequence


class BuildGraphError(Exception):
    """Base class for all buildgraph errors"""


class ConfigError(BuildGraphError):
    """Raised before any task runs. Aborts the whole build."""


class DuplicateTaskError(ConfigError):
    def __init__(self, name: str):
        super().__init__(f"Task already registered: {name}")
        self.name = name


class UnknownDependencyError(ConfigError):
    def __init__(self, name: str, dependency: str):
        super().__init__(f"Task {name!r} depends on unknown task {dependency!r}")
        self.name = name
        self.dependency = dependency


class CycleError(ConfigError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("Cycle detected in task graph: " + " -> ".join(self.cycle))


class InvalidTransitionError(BuildGraphError):
    pass


class TaskExecutionError(BuildGraphError):
    """An action raised. The original exception is chained as ``__cause__``."""

    def __init__(self, task: str, message: str):
        super().__init__(f"{task}: {message}")
        self.task = task


class TaskTimeoutError(TaskExecutionError, TimeoutError):
    def __init__(self, task: str, timeout: float):
        super().__init__(task, f"timed out after {timeout:g}s")
        self.timeout = timeout


class CacheCorruptionError(BuildGraphError):
    pass
