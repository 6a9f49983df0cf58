from __future__ import annotations

import importlib.util
import signal
import threading
from pathlib import Path
from types import ModuleType
from typing import Dict, List, Optional

import typer
from dotenv import load_dotenv

from .cache import ArtifactCache
from .config import load_config
from .core import Build, TaskSpec, graph_from_specs
from .errors import ConfigError, DuplicateTaskError
from .logging import get_logger
from .manifest import YamlManifestEmitter
from .scheduler import CancellationToken


CONFIG_ERROR_EXIT = 3

app = typer.Typer(add_completion=False, help="Task graph build runner")
log = get_logger("buildgraph.cli")


def load_buildfile(path: str | Path) -> ModuleType:
    p = Path(path)
    if not p.is_file():
        raise ConfigError(f"Buildfile not found: {p}")
    spec = importlib.util.spec_from_file_location(f"buildfile_{p.stem}", p)
    if spec is None or spec.loader is None:
        raise ConfigError(f"Cannot import buildfile: {p}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:  # noqa: BLE001
        raise ConfigError(f"Cannot import buildfile {p}: {e}") from e
    return module


def discover_tasks(module: ModuleType) -> Dict[str, TaskSpec]:
    """Collect functions decorated with ``@task`` in definition order."""
    specs: Dict[str, TaskSpec] = {}
    for attr_name in vars(module):
        obj = getattr(module, attr_name)
        spec = getattr(obj, "_task_spec", None)
        if not isinstance(spec, TaskSpec):
            continue
        # The same function bound to two names is one task
        if spec.name in specs and specs[spec.name] is not spec:
            raise DuplicateTaskError(spec.name)
        specs[spec.name] = spec
    return specs


def _load_build(buildfile: str):
    module = load_buildfile(buildfile)
    specs = discover_tasks(module)
    if not specs:
        raise ConfigError(
            f"No tasks found in {buildfile}. Decorate functions with @task(name=...)."
        )
    name = getattr(module, "BUILD_NAME", Path(buildfile).parent.resolve().name)
    return module, Build(graph_from_specs(specs.values()), name=name)


def _config_error(e: ConfigError) -> typer.Exit:
    typer.echo(f"Configuration error: {e}", err=True)
    return typer.Exit(code=CONFIG_ERROR_EXIT)


@app.command("list")
def list_tasks(
    buildfile: str = typer.Option("buildfile.py", help="Python file declaring tasks"),
):
    """List tasks declared in the buildfile."""
    try:
        _, build = _load_build(buildfile)
    except ConfigError as e:
        raise _config_error(e)
    typer.echo("Declared tasks:")
    for t in build.graph:
        suffix = f" (after {', '.join(t.deps)})" if t.deps else ""
        typer.echo(f"- {t.name}{suffix}")


@app.command()
def order(
    targets: Optional[List[str]] = typer.Argument(None, help="Tasks to build"),
    buildfile: str = typer.Option("buildfile.py", help="Python file declaring tasks"),
):
    """Print the execution order."""
    try:
        _, build = _load_build(buildfile)
        graph = build.graph.subgraph(targets) if targets else build.graph
        names = graph.topological_order()
    except ConfigError as e:
        raise _config_error(e)
    for i, name in enumerate(names, 1):
        typer.echo(f"{i:>3}. {name}")


@app.command()
def run(
    targets: Optional[List[str]] = typer.Argument(None, help="Tasks to build (default: all)"),
    buildfile: str = typer.Option("buildfile.py", help="Python file declaring tasks"),
    config: Optional[str] = typer.Option(None, help="Path to YAML config"),
    workers: Optional[int] = typer.Option(None, help="Worker pool size"),
    fail_fast: Optional[bool] = typer.Option(
        None, "--fail-fast/--no-fail-fast", help="Stop dispatching after the first failure"
    ),
    cache_dir: Optional[str] = typer.Option(None, help="Persist cached outputs here"),
    timeout: Optional[str] = typer.Option(None, help="Per-task timeout, e.g. 30s or 5m"),
    retries: Optional[int] = typer.Option(None, help="Retries per task on failure"),
    force: str = typer.Option("", help="Comma-separated tasks to rebuild ignoring cache"),
    manifest: Optional[str] = typer.Option(
        None, help="Write the buildfile's `manifest` descriptor here on success"
    ),
    runs_dir: Optional[str] = typer.Option(None, help="Write state.json and build.log here"),
):
    """Run the build and print a per-task report."""
    load_dotenv()
    try:
        run_config, params = load_config(config)
        run_config = run_config.with_env().with_overrides(
            worker_count=workers,
            fail_fast=fail_fast,
            cache_dir=cache_dir,
            timeout_per_task=timeout,
            retries=retries,
            runs_dir=runs_dir,
        )
        module, build = _load_build(buildfile)
        if targets:
            build.graph.subgraph(targets)
    except ConfigError as e:
        raise _config_error(e)

    emitter = YamlManifestEmitter(manifest) if manifest else None
    descriptor = getattr(module, "manifest", None)
    if emitter is not None and descriptor is None:
        log.warning("--manifest given but %s defines no `manifest`", buildfile)

    token = CancellationToken()
    previous = signal.getsignal(signal.SIGINT)

    def _cancel(signum, frame):
        typer.echo("Cancelling: waiting for running tasks to finish...", err=True)
        token.cancel()

    # Signal handlers can only be installed from the main thread
    in_main = threading.current_thread() is threading.main_thread()
    if in_main:
        signal.signal(signal.SIGINT, _cancel)
    try:
        report = build.run(
            config=run_config,
            targets=targets or (),
            params=params,
            token=token,
            force=[x.strip() for x in force.split(",") if x.strip()],
            emitter=emitter,
            descriptor=descriptor,
        )
    finally:
        if in_main:
            signal.signal(signal.SIGINT, previous)

    for line in report.format():
        typer.echo(line)
    raise typer.Exit(code=report.exit_code)


@app.command("cache-clear")
def cache_clear(
    cache_dir: str = typer.Option(..., help="Cache directory to wipe"),
):
    """Drop every persisted cache entry."""
    ArtifactCache(cache_dir).clear()
    typer.echo(f"Cleared {cache_dir}")


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
