from __future__ import annotations

import heapq
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Union

from .config import parse_duration
from .errors import (
    CycleError,
    DuplicateTaskError,
    InvalidTransitionError,
    UnknownDependencyError,
)


# Static list of paths/globs, or a callable that builds them from build params
PathSpec = Union[List[str], Callable[[dict], List[str]]]


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED)


_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.READY},
    TaskStatus.READY: {TaskStatus.RUNNING, TaskStatus.SKIPPED},
    TaskStatus.RUNNING: {TaskStatus.SUCCEEDED, TaskStatus.FAILED},
}


@dataclass
class Task:
    name: str
    deps: List[str]
    action: Any = None
    inputs: Optional[PathSpec] = None
    config: Optional[dict] = None
    timeout: Optional[float] = None
    status: TaskStatus = field(default=TaskStatus.PENDING)

    @property
    def cacheable(self) -> bool:
        return bool(self.inputs) or self.config is not None

    def transition(self, new: TaskStatus) -> None:
        if new not in _TRANSITIONS.get(self.status, ()):
            raise InvalidTransitionError(
                f"{self.name}: {self.status.value} -> {new.value} is not allowed"
            )
        self.status = new

    def reset(self) -> None:
        self.status = TaskStatus.PENDING


class TaskGraph:
    """Task nodes plus declared dependency edges.

    Tasks keep their insertion order, which is the tie-breaker for cycle
    reporting and for topological ordering.
    """

    def __init__(self, lazy: bool = False):
        self.lazy = lazy
        self._tasks: Dict[str, Task] = {}

    def add_task(
        self,
        name: str,
        deps: Iterable[str] = (),
        action: Any = None,
        *,
        inputs: Optional[PathSpec] = None,
        config: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Task:
        if name in self._tasks:
            raise DuplicateTaskError(name)
        unique: List[str] = []
        for dep in deps:
            if dep == name:
                raise CycleError([name, name])
            if dep in unique:
                continue
            if not self.lazy and dep not in self._tasks:
                raise UnknownDependencyError(name, dep)
            unique.append(dep)
        task = Task(
            name=name,
            deps=unique,
            action=action,
            inputs=inputs,
            config=config,
            timeout=parse_duration(timeout),
        )
        self._tasks[name] = task
        return task

    def add_edge(self, dependent: str, dependency: str) -> None:
        if dependent not in self._tasks:
            raise KeyError(f"Unknown task: {dependent}")
        if dependent == dependency:
            raise CycleError([dependent, dependent])
        if not self.lazy and dependency not in self._tasks:
            raise UnknownDependencyError(dependent, dependency)
        deps = self._tasks[dependent].deps
        if dependency not in deps:
            deps.append(dependency)

    def get(self, name: str) -> Task:
        return self._tasks[name]

    def dependents(self, name: str) -> List[str]:
        return [t.name for t in self._tasks.values() if name in t.deps]

    def __contains__(self, name: object) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    @property
    def names(self) -> List[str]:
        return list(self._tasks)

    def validate(self) -> None:
        """Raise UnknownDependencyError or CycleError for an unrunnable graph.

        Depth-first search visits tasks in insertion order and deps in declared
        order, so the reported cycle is stable between runs.
        """
        for task in self._tasks.values():
            for dep in task.deps:
                if dep not in self._tasks:
                    raise UnknownDependencyError(task.name, dep)

        WHITE, GREY, BLACK = 0, 1, 2
        colour = {name: WHITE for name in self._tasks}
        for root in self._tasks:
            if colour[root] != WHITE:
                continue
            path = [root]
            colour[root] = GREY
            stack = [iter(self._tasks[root].deps)]
            while stack:
                dep = next(stack[-1], None)
                if dep is None:
                    stack.pop()
                    colour[path.pop()] = BLACK
                    continue
                if colour[dep] == GREY:
                    start = path.index(dep)
                    raise CycleError(path[start:] + [dep])
                if colour[dep] == WHITE:
                    colour[dep] = GREY
                    path.append(dep)
                    stack.append(iter(self._tasks[dep].deps))

    def topological_order(self) -> List[str]:
        self.validate()
        index = {name: i for i, name in enumerate(self._tasks)}
        remaining = {name: len(t.deps) for name, t in self._tasks.items()}
        released: Dict[str, List[str]] = {name: [] for name in self._tasks}
        for task in self._tasks.values():
            for dep in task.deps:
                released[dep].append(task.name)

        heap = [(index[n], n) for n, count in remaining.items() if count == 0]
        heapq.heapify(heap)
        ordered: List[str] = []
        while heap:
            _, name = heapq.heappop(heap)
            ordered.append(name)
            for m in released[name]:
                remaining[m] -= 1
                if remaining[m] == 0:
                    heapq.heappush(heap, (index[m], m))
        return ordered

    def subgraph(self, targets: Iterable[str]) -> "TaskGraph":
        """Graph holding ``targets`` and everything they transitively need."""
        wanted = set()
        pending = list(targets)
        while pending:
            name = pending.pop()
            if name in wanted:
                continue
            if name not in self._tasks:
                raise UnknownDependencyError("<target>", name)
            wanted.add(name)
            pending.extend(self._tasks[name].deps)

        sub = TaskGraph(lazy=True)
        for task in self._tasks.values():
            if task.name in wanted:
                sub.add_task(
                    task.name,
                    task.deps,
                    task.action,
                    inputs=task.inputs,
                    config=task.config,
                    timeout=task.timeout,
                )
        sub.lazy = self.lazy
        return sub
