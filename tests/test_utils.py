from pathlib import Path

from buildgraph.utils import expand_globs, resolve_paths


def _tree(root):
    for rel in ["src/Main1.java", "src/Main2.java", "src/util/Helper.java", "README.md"]:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(rel, encoding="utf-8")


def test_question_mark_pattern_searches_its_own_directory(tmp_path):
    _tree(tmp_path)

    found = expand_globs([str(tmp_path / "src" / "Main?.java")])

    assert found == [tmp_path / "src" / "Main1.java", tmp_path / "src" / "Main2.java"]


def test_bracket_pattern_matches(tmp_path):
    _tree(tmp_path)

    assert expand_globs([str(tmp_path / "src" / "Main[2].java")]) == [
        tmp_path / "src" / "Main2.java"
    ]


def test_single_star_stays_in_one_directory(tmp_path):
    _tree(tmp_path)

    found = expand_globs([str(tmp_path / "src" / "*.java")])

    assert tmp_path / "src" / "util" / "Helper.java" not in found
    assert len(found) == 2


def test_double_star_recurses_and_skips_directories(tmp_path):
    _tree(tmp_path)

    found = expand_globs([str(tmp_path / "src" / "**" / "*")])

    assert found == sorted(
        [
            tmp_path / "src" / "Main1.java",
            tmp_path / "src" / "Main2.java",
            tmp_path / "src" / "util" / "Helper.java",
        ]
    )


def test_plain_paths_pass_through_even_if_missing(tmp_path):
    missing = tmp_path / "later.jar"
    assert expand_globs([str(missing)]) == [Path(missing)]


def test_resolve_paths_accepts_callables():
    assert resolve_paths(lambda p: [p["src"], Path("b")], {"src": "a"}) == ["a", "b"]
    assert resolve_paths(None, {}) == []
