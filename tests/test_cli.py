import textwrap

import pytest
import yaml
from typer.testing import CliRunner

from buildgraph.cli import app


runner = CliRunner()


def _buildfile(tmp_path, body):
    path = tmp_path / "buildfile.py"
    path.write_text(
        "from buildgraph import task\n\n" + textwrap.dedent(body), encoding="utf-8"
    )
    return path


@pytest.fixture
def plugin_build(tmp_path):
    return _buildfile(
        tmp_path,
        """
        BUILD_NAME = "tireswing"
        manifest = {
            "name": "TireSwing",
            "version": "1.0.0-SNAPSHOT",
            "main": "se.wilmer.tireswing.TireSwing",
            "api-version": "1.21",
        }

        @task(name="compileJava", config={"release": 21})
        def compile_java(ctx):
            return "classes"

        @task(name="javadoc", deps=["compileJava"])
        def javadoc(ctx):
            return "docs"

        @task(name="reobfJar", deps=["compileJava"])
        def reobf(ctx):
            return "tireswing.jar"

        @task(name="assemble", deps=["reobfJar"])
        def assemble(ctx):
            return ctx.deps["reobfJar"]
        """,
    )


def test_list_shows_declared_tasks(plugin_build):
    result = runner.invoke(app, ["list", "--buildfile", str(plugin_build)])

    assert result.exit_code == 0
    assert "- compileJava" in result.output
    assert "- assemble (after reobfJar)" in result.output


def test_order_for_target(plugin_build):
    result = runner.invoke(app, ["order", "assemble", "--buildfile", str(plugin_build)])

    assert result.exit_code == 0
    lines = [line.split(". ", 1)[1] for line in result.output.strip().splitlines()]
    assert lines == ["compileJava", "reobfJar", "assemble"]


def test_run_succeeds_and_writes_manifest(plugin_build, tmp_path):
    out = tmp_path / "build" / "plugin.yml"
    result = runner.invoke(
        app,
        [
            "run",
            "assemble",
            "--buildfile",
            str(plugin_build),
            "--workers",
            "2",
            "--manifest",
            str(out),
        ],
    )

    assert result.exit_code == 0, result.output
    assert "BUILD SUCCEEDED" in result.output
    manifest = yaml.safe_load(out.read_text(encoding="utf-8"))
    assert manifest["main"] == "se.wilmer.tireswing.TireSwing"
    assert manifest["artifacts"] == ["compileJava", "reobfJar", "assemble"]


def test_failed_task_exits_one(tmp_path):
    path = _buildfile(
        tmp_path,
        """
        @task(name="compile")
        def compile_(ctx):
            raise RuntimeError("cannot find symbol")

        @task(name="jar", deps=["compile"])
        def jar(ctx):
            return "x.jar"
        """,
    )

    result = runner.invoke(app, ["run", "--buildfile", str(path), "--workers", "1"])

    assert result.exit_code == 1
    assert "cannot find symbol" in result.output
    assert "dependency failed: compile" in result.output


def test_cycle_exits_three_without_running(tmp_path):
    marker = tmp_path / "ran"
    path = _buildfile(
        tmp_path,
        f"""
        @task(name="a", deps=["b"])
        def a(ctx):
            open({str(marker)!r}, "w").close()

        @task(name="b", deps=["a"])
        def b(ctx):
            open({str(marker)!r}, "w").close()
        """,
    )

    result = runner.invoke(app, ["run", "--buildfile", str(path)])

    assert result.exit_code == 3
    assert not marker.exists()


def test_missing_buildfile_and_bad_options_exit_three(tmp_path, plugin_build):
    missing = runner.invoke(app, ["run", "--buildfile", str(tmp_path / "nope.py")])
    assert missing.exit_code == 3

    bad_timeout = runner.invoke(
        app, ["run", "--buildfile", str(plugin_build), "--timeout", "whenever"]
    )
    assert bad_timeout.exit_code == 3

    unknown_target = runner.invoke(
        app, ["run", "publish", "--buildfile", str(plugin_build)]
    )
    assert unknown_target.exit_code == 3


@pytest.mark.parametrize(
    "body",
    [
        "def broken(:\n    pass\n",
        "raise ImportError('no such plugin api')\n",
        "@task(name='compile', timeout=0)\ndef compile_(ctx):\n    return 1\n",
    ],
    ids=["syntax-error", "import-time-raise", "zero-timeout"],
)
def test_unloadable_buildfile_exits_three(tmp_path, body):
    path = _buildfile(tmp_path, body)

    result = runner.invoke(app, ["run", "--buildfile", str(path)])

    assert result.exit_code == 3


def test_two_functions_with_one_task_name_exit_three(tmp_path):
    marker = tmp_path / "ran"
    path = _buildfile(
        tmp_path,
        f"""
        @task(name="jar")
        def jar_a(ctx):
            open({str(marker)!r}, "w").close()

        @task(name="jar")
        def jar_b(ctx):
            open({str(marker)!r}, "w").close()
        """,
    )

    result = runner.invoke(app, ["run", "--buildfile", str(path)])

    assert result.exit_code == 3
    assert "jar" in result.output
    assert not marker.exists()


def test_one_function_bound_to_two_names_is_one_task(tmp_path):
    path = _buildfile(
        tmp_path,
        """
        @task(name="jar")
        def jar(ctx):
            return "x.jar"

        shadow_jar = jar
        """,
    )

    result = runner.invoke(app, ["list", "--buildfile", str(path)])

    assert result.exit_code == 0
    assert result.output.count("- jar") == 1


def test_cache_dir_makes_second_run_cached(plugin_build, tmp_path):
    cache_dir = tmp_path / "cache"
    args = ["run", "--buildfile", str(plugin_build), "--cache-dir", str(cache_dir)]

    runner.invoke(app, args)
    second = runner.invoke(app, args)

    assert second.exit_code == 0
    compile_line = next(
        line for line in second.output.splitlines() if line.startswith("compileJava")
    )
    assert compile_line.rstrip().endswith("cached")

    cleared = runner.invoke(app, ["cache-clear", "--cache-dir", str(cache_dir)])
    assert cleared.exit_code == 0
    assert not cache_dir.exists()
