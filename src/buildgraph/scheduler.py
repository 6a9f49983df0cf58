from __future__ import annotations

import heapq
import inspect
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from logging import Logger
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from .cache import ArtifactCache, compute_fingerprint
from .config import RunConfig
from .errors import TaskExecutionError, TaskTimeoutError
from .graph import Task, TaskGraph, TaskStatus
from .logging import get_logger
from .utils import expand_globs, resolve_paths


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class TaskContext:
    """What an action sees while it runs."""

    name: str
    params: dict
    deps: Dict[str, Any]
    token: CancellationToken
    logger: Logger
    deadline: Optional[float] = None
    timeout: Optional[float] = None
    fingerprint: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())


class RunStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def exit_code(self) -> int:
        return {"SUCCEEDED": 0, "FAILED": 1, "CANCELLED": 2}[self.value]


@dataclass
class TaskResult:
    name: str
    status: TaskStatus
    output: Any = None
    error: Optional[BaseException] = None
    cached: bool = False
    fingerprint: Optional[str] = None
    skipped_because: Optional[str] = None
    duration: float = 0.0

    @property
    def detail(self) -> str:
        if self.status == TaskStatus.FAILED and self.error is not None:
            cause = self.error.__cause__ or self.error
            return f"{type(cause).__name__}: {cause}"
        if self.status == TaskStatus.SKIPPED:
            return f"dependency failed: {self.skipped_because}"
        if self.status == TaskStatus.SUCCEEDED:
            return "cached" if self.cached else f"{self.duration:.2f}s"
        return "not run"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "cached": self.cached,
            "fingerprint": self.fingerprint,
            "skipped_because": self.skipped_because,
            "error": self.detail if self.status == TaskStatus.FAILED else None,
            "duration": round(self.duration, 4),
        }


@dataclass
class RunReport:
    status: RunStatus
    results: Dict[str, TaskResult]
    started_at: float
    finished_at: float

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    def by_status(self, status: TaskStatus) -> List[str]:
        return [n for n, r in self.results.items() if r.status == status]

    def outputs(self) -> Dict[str, Any]:
        """Outputs of SUCCEEDED tasks, in topological order."""
        return {
            n: r.output
            for n, r in self.results.items()
            if r.status == TaskStatus.SUCCEEDED
        }

    def format(self) -> List[str]:
        width = max((len(n) for n in self.results), default=0)
        lines = [
            f"{name.ljust(width)}  {r.status.value:<9}  {r.detail}"
            for name, r in self.results.items()
        ]
        lines.append(
            f"BUILD {self.status.value} in {self.finished_at - self.started_at:.2f}s"
        )
        return lines

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration": round(self.finished_at - self.started_at, 4),
            "tasks": [r.to_dict() for r in self.results.values()],
        }


def _callable(action: Any) -> Callable[[TaskContext], Any]:
    if action is None:
        return lambda ctx: None
    run = getattr(action, "run", None)
    if callable(run) and not inspect.isfunction(action):
        return run
    if callable(action):
        return action
    raise TypeError(f"Task action is not callable: {action!r}")


def _source_paths(action: Any) -> List[Path]:
    fn = _callable(action) if action is not None else None
    if fn is None:
        return []
    try:
        src = inspect.getsourcefile(fn)
    except TypeError:
        return []
    if not src:
        return []
    path = Path(src)
    return [path] if path.exists() else []


@dataclass
class _Slot:
    task: Task
    context: TaskContext
    started: float
    deadline: Optional[float]
    timed_out: bool = False


@dataclass
class _RunState:
    graph: TaskGraph
    index: Dict[str, int]
    remaining: Dict[str, int]
    dependents: Dict[str, List[str]]
    results: Dict[str, TaskResult] = field(default_factory=dict)
    frontier: List[tuple] = field(default_factory=list)
    running: Dict[Future, _Slot] = field(default_factory=dict)
    failed: bool = False


class Scheduler:
    """Runs a TaskGraph on a fixed-size thread pool.

    Kahn's algorithm with a concurrent frontier: a task is released once all of
    its deps are terminal, dispatched while a worker slot is free, and its
    dependents are re-evaluated when it completes. The frontier is owned by the
    dispatching thread; workers only run actions and touch the cache.
    """

    def __init__(
        self,
        config: Optional[RunConfig] = None,
        cache: Optional[ArtifactCache] = None,
        on_complete: Optional[Callable[[TaskResult], None]] = None,
    ):
        self.config = config or RunConfig()
        self.cache = cache if cache is not None else ArtifactCache(self.config.cache_dir)
        self.on_complete = on_complete
        self.logger = get_logger("buildgraph.scheduler")

    def run(
        self,
        graph: TaskGraph,
        token: Optional[CancellationToken] = None,
        params: Optional[dict] = None,
        force: Iterable[str] = (),
    ) -> RunReport:
        order = graph.topological_order()
        token = token or CancellationToken()
        params = params or {}
        force = set(force)

        state = _RunState(
            graph=graph,
            index={name: i for i, name in enumerate(graph.names)},
            remaining={t.name: len(t.deps) for t in graph},
            dependents={name: [] for name in graph.names},
        )
        for task in graph:
            task.reset()
            for dep in task.deps:
                state.dependents[dep].append(task.name)

        started_at = time.time()
        self.logger.info(
            "Running %d task(s) on %d worker(s)", len(order), self.config.worker_count
        )
        for task in graph:
            if not task.deps:
                self._release(state, task.name)

        pool = ThreadPoolExecutor(
            max_workers=self.config.worker_count, thread_name_prefix="buildgraph"
        )
        try:
            while True:
                if not self._stopped(state, token):
                    self._dispatch(state, pool, token, params, force)
                # Timed-out actions are already FAILED; nothing waits on them
                if all(slot.timed_out for slot in state.running.values()):
                    break
                done, _ = wait(
                    list(state.running),
                    timeout=self._next_deadline(state),
                    return_when=FIRST_COMPLETED,
                )
                for fut in done:
                    self._finish(state, state.running.pop(fut), fut)
                self._expire(state)
        finally:
            if state.running:
                self.logger.warning(
                    "Returning with %d action(s) still running: %s",
                    len(state.running),
                    ", ".join(s.task.name for s in state.running.values()),
                )
            pool.shutdown(wait=not state.running)

        results = {}
        for name in order:
            results[name] = state.results.get(name) or TaskResult(
                name=name, status=graph.get(name).status
            )
        if token.cancelled:
            status = RunStatus.CANCELLED
        elif state.failed:
            status = RunStatus.FAILED
        else:
            status = RunStatus.SUCCEEDED
        self.logger.info("Run finished: %s", status.value)
        return RunReport(
            status=status,
            results=results,
            started_at=started_at,
            finished_at=time.time(),
        )

    def _stopped(self, state: _RunState, token: CancellationToken) -> bool:
        return token.cancelled or (self.config.fail_fast and state.failed)

    def _release(self, state: _RunState, name: str) -> None:
        """Move a task whose deps are all terminal to READY, or skip it."""
        pending = [name]
        while pending:
            task = state.graph.get(pending.pop())
            task.transition(TaskStatus.READY)
            culprit = self._failed_ancestor(state, task)
            if culprit is None:
                heapq.heappush(state.frontier, (state.index[task.name], task.name))
                continue
            task.transition(TaskStatus.SKIPPED)
            self.logger.warning("Skip %s: dependency %s failed", task.name, culprit)
            self._record(
                state,
                TaskResult(
                    name=task.name,
                    status=TaskStatus.SKIPPED,
                    skipped_because=culprit,
                ),
            )
            pending.extend(reversed(self._resolve_dependents(state, task.name)))

    def _failed_ancestor(self, state: _RunState, task: Task) -> Optional[str]:
        for dep in task.deps:
            result = state.results[dep]
            if result.status == TaskStatus.FAILED:
                return dep
            if result.status == TaskStatus.SKIPPED:
                return result.skipped_because
        return None

    def _resolve_dependents(self, state: _RunState, name: str) -> List[str]:
        """Count ``name`` as terminal; return dependents that became releasable."""
        released = []
        for dependent in state.dependents[name]:
            state.remaining[dependent] -= 1
            if state.remaining[dependent] == 0:
                released.append(dependent)
        return released

    def _record(self, state: _RunState, result: TaskResult) -> None:
        state.results[result.name] = result
        if result.status == TaskStatus.FAILED:
            state.failed = True
        if self.on_complete is not None:
            self.on_complete(result)

    def _dispatch(self, state, pool, token, params, force) -> None:
        while state.frontier and len(state.running) < self.config.worker_count:
            _, name = heapq.heappop(state.frontier)
            task = state.graph.get(name)
            timeout = (
                task.timeout
                if task.timeout is not None
                else self.config.timeout_per_task
            )
            now = time.monotonic()
            deadline = now + timeout if timeout else None
            context = TaskContext(
                name=name,
                params=params,
                deps={d: state.results[d].output for d in task.deps},
                token=token,
                logger=get_logger(f"buildgraph.task.{name}"),
                deadline=deadline,
                timeout=timeout,
            )
            dep_fingerprints = {d: state.results[d].fingerprint for d in task.deps}
            task.transition(TaskStatus.RUNNING)
            self.logger.info("Run: %s", name)
            fut = pool.submit(
                self._execute, task, context, dep_fingerprints, name in force
            )
            state.running[fut] = _Slot(
                task=task, context=context, started=now, deadline=deadline
            )

    def _fingerprint(
        self, task: Task, params: dict, dep_fingerprints: Dict[str, Optional[str]]
    ) -> Optional[str]:
        # A task downstream of an uncached dep cannot prove its inputs unchanged
        if not task.cacheable or any(fp is None for fp in dep_fingerprints.values()):
            return None
        inputs = expand_globs(resolve_paths(task.inputs, params))
        return compute_fingerprint(
            name=task.name,
            input_paths=inputs,
            code_paths=_source_paths(task.action),
            config=task.config,
            dep_fingerprints=dep_fingerprints,
        )

    def _execute(
        self,
        task: Task,
        context: TaskContext,
        dep_fingerprints: Dict[str, Optional[str]],
        force: bool,
    ):
        """Worker body. Returns ``(cached, output, fingerprint)``."""
        fingerprint = self._fingerprint(task, context.params, dep_fingerprints)
        context.fingerprint = fingerprint
        action = _callable(task.action)

        def compute():
            output = self._invoke(action, context)
            if context.expired:
                # Never cache a result that arrived past its deadline
                raise TaskTimeoutError(context.name, context.timeout)
            return output

        if fingerprint is None:
            return False, compute(), None
        cached, output = self.cache.get_or_compute(fingerprint, compute, force=force)
        return cached, output, fingerprint

    def _invoke(self, action: Callable[[TaskContext], Any], context: TaskContext):
        attempt = 0
        while True:
            try:
                return action(context)
            except Exception:
                attempt += 1
                context.logger.exception(
                    "Task failed (%s), attempt %d/%d",
                    context.name,
                    attempt,
                    self.config.retries + 1,
                )
                if attempt > self.config.retries or context.expired:
                    raise

    def _finish(self, state: _RunState, slot: _Slot, fut: Future) -> None:
        name = slot.task.name
        duration = time.monotonic() - slot.started
        if slot.timed_out:
            self.logger.info("Discarding late result of timed-out task %s", name)
            return
        exc = fut.exception()
        if exc is None:
            cached, output, fingerprint = fut.result()
            slot.task.transition(TaskStatus.SUCCEEDED)
            if cached:
                self.logger.info("Skip (cached): %s", name)
            result = TaskResult(
                name=name,
                status=TaskStatus.SUCCEEDED,
                output=output,
                cached=cached,
                fingerprint=fingerprint,
                duration=duration,
            )
        else:
            slot.task.transition(TaskStatus.FAILED)
            if isinstance(exc, TaskTimeoutError):
                error = exc
            else:
                error = TaskExecutionError(name, str(exc))
                error.__cause__ = exc
            self.logger.error("Failed: %s (%s)", name, exc)
            result = TaskResult(
                name=name, status=TaskStatus.FAILED, error=error, duration=duration
            )
        self._complete(state, result)

    def _complete(self, state: _RunState, result: TaskResult) -> None:
        self._record(state, result)
        for dependent in self._resolve_dependents(state, result.name):
            self._release(state, dependent)

    def _next_deadline(self, state: _RunState) -> Optional[float]:
        deadlines = [
            s.deadline
            for s in state.running.values()
            if s.deadline is not None and not s.timed_out
        ]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - time.monotonic())

    def _expire(self, state: _RunState) -> None:
        now = time.monotonic()
        for slot in state.running.values():
            if slot.timed_out or slot.deadline is None or now < slot.deadline:
                continue
            slot.timed_out = True
            task = slot.task
            task.transition(TaskStatus.FAILED)
            timeout = slot.deadline - slot.started
            self.logger.error("Timed out: %s after %.2fs", task.name, timeout)
            self._complete(
                state,
                TaskResult(
                    name=task.name,
                    status=TaskStatus.FAILED,
                    error=TaskTimeoutError(task.name, timeout),
                    duration=now - slot.started,
                ),
            )
