import os
import sys

import pytest

# Make src/ importable without an editable install
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from buildgraph import RunConfig, TaskGraph  # noqa: E402


@pytest.fixture
def config():
    return RunConfig(worker_count=2)


@pytest.fixture
def chain():
    """a <- b <- c: c depends on b, b depends on a."""
    calls = []

    def make(name, fail=False):
        def action(ctx):
            calls.append(name)
            if fail:
                raise RuntimeError(f"{name} broke")
            return name.upper()

        return action

    graph = TaskGraph()
    graph.add_task("a", [], make("a"))
    graph.add_task("b", ["a"], make("b", fail=True))
    graph.add_task("c", ["b"], make("c"))
    return graph, calls
