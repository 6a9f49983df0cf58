from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional

from .cache import ArtifactCache
from .config import RunConfig
from .graph import PathSpec, TaskGraph
from .logging import detach_file_handlers, get_logger
from .manifest import ManifestEmitter
from .scheduler import CancellationToken, RunReport, RunStatus, Scheduler
from .utils import slugify


@dataclass
class TaskSpec:
    name: str
    fn: Callable[..., Any]
    deps: List[str] = field(default_factory=list)
    inputs: Optional[PathSpec] = None
    config: Optional[dict] = None
    timeout: Optional[float] = None


def task(
    name: str,
    deps: Iterable[str] = (),
    inputs: Optional[PathSpec] = None,
    config: Optional[dict] = None,
    timeout: Optional[float] = None,
):
    """Decorator to declare a build task on a function.

    The wrapped function receives a single :class:`TaskContext` and returns the
    task's output. Declaring ``inputs`` or ``config`` makes the task cacheable.
    """

    def deco(fn: Callable[..., Any]):
        spec = TaskSpec(
            name=name,
            fn=fn,
            deps=list(deps),
            inputs=inputs,
            config=config,
            timeout=timeout,
        )
        setattr(fn, "_task_spec", spec)
        return fn

    return deco


def graph_from_specs(specs: Iterable[TaskSpec]) -> TaskGraph:
    """Build a graph from declarations that may reference each other in any order."""
    graph = TaskGraph(lazy=True)
    for spec in specs:
        graph.add_task(
            spec.name,
            spec.deps,
            spec.fn,
            inputs=spec.inputs,
            config=spec.config,
            timeout=spec.timeout,
        )
    graph.validate()
    return graph


class Build:
    def __init__(self, graph: TaskGraph, name: str = "build"):
        self.name = name
        self.graph = graph
        self.logger = get_logger(f"buildgraph.{slugify(self.name)}")

    def run(
        self,
        config: Optional[RunConfig] = None,
        targets: Iterable[str] = (),
        params: Optional[dict] = None,
        token: Optional[CancellationToken] = None,
        force: Iterable[str] = (),
        emitter: Optional[ManifestEmitter] = None,
        descriptor: Any = None,
        cache: Optional[ArtifactCache] = None,
    ) -> RunReport:
        config = config or RunConfig()
        targets = list(targets)
        graph = self.graph.subgraph(targets) if targets else self.graph
        graph.validate()

        run_dir = None
        if config.runs_dir is not None:
            run_id = time.strftime("%Y%m%d-%H%M%S")
            run_dir = Path(config.runs_dir) / slugify(self.name) / run_id
            run_dir.mkdir(parents=True, exist_ok=True)
            get_logger("buildgraph", log_file=run_dir / "build.log")

        try:
            if targets:
                self.logger.info("Selected targets: %s", ", ".join(targets))
            scheduler = Scheduler(config=config, cache=cache)
            report = scheduler.run(graph, token=token, params=params, force=force)
            for line in report.format():
                self.logger.info(line)

            manifest = None
            if emitter is not None and report.status == RunStatus.SUCCEEDED:
                manifest = emitter.emit(report.outputs(), descriptor)
            if run_dir is not None:
                _write_state(run_dir, self.name, report, manifest)
            return report
        finally:
            if run_dir is not None:
                detach_file_handlers(get_logger("buildgraph"))


def _write_state(run_dir: Path, name: str, report: RunReport, manifest: Any) -> None:
    state = {"build": name, **report.to_dict()}
    if manifest is not None:
        state["manifest"] = str(manifest)
    with open(run_dir / "state.json", "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2)
