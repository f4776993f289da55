"""Tests for the query result renderers."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from codeindex.rag.render import read_snippet, render
from codeindex.rag.retriever import NO_MATCH_MESSAGE, QueryResult
from codeindex.store.models import Hit


@pytest.fixture
def root(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text(
        "import os\n\ndef main():\n    return os.getcwd()\n", encoding="utf-8"
    )
    return tmp_path


def _result(confident: bool = True) -> QueryResult:
    hit = Hit(
        rank=1,
        id=4,
        score=0.8125,
        path="src/app.py",
        start=3,
        end=4,
        lang="python",
        preview="def main():\n    return os.getcwd()",
    )
    return QueryResult(
        query="cwd",
        hits=[hit],
        threshold=0.6,
        top_score=0.8125,
        confident=confident,
        summary="81% confidence, 1 item" if confident else None,
    )


# ---------------------------------------------------------------------------
# Gated results
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "fmt, expected",
    [("text", NO_MATCH_MESSAGE), ("json", "[]"), ("xml", "<results/>")],
)
def test_gated_result_renders_no_match(root: Path, fmt: str, expected: str) -> None:
    assert render(_result(confident=False), root, fmt=fmt) == expected


# ---------------------------------------------------------------------------
# Formats
# ---------------------------------------------------------------------------


def test_text_lists_hits(root: Path) -> None:
    out = render(_result(), root)
    lines = out.splitlines()
    assert lines[0] == "81% confidence, 1 item"
    assert "src/app.py:3-4" in lines[1]
    assert "0.812" in lines[1] or "0.813" in lines[1]


def test_text_snippets_with_line_numbers(root: Path) -> None:
    out = render(_result(), root, snippets=True)
    assert "3 | def main():" in out
    assert "4 |     return os.getcwd()" in out


def test_text_snippets_without_line_numbers(root: Path) -> None:
    out = render(_result(), root, snippets=True, line_numbers=False)
    assert "      def main():" in out
    assert " | " not in out


def test_json_rows(root: Path) -> None:
    rows = json.loads(render(_result(), root, fmt="json", snippets=True))
    assert rows[0]["path"] == "src/app.py"
    assert rows[0]["rank"] == 1
    assert rows[0]["id"] == 4
    assert rows[0]["snippet"].startswith("3 | def main():")


def test_xml_escapes(root: Path) -> None:
    result = _result()
    result.hits[0] = Hit(1, 4, 0.8, "src/a&b.py", 1, 1, "python", "x < y")
    out = render(result, root, fmt="xml")
    assert 'path="src/a&amp;b.py"' in out
    assert "<text>x &lt; y</text>" in out
    assert out.startswith('<results summary="81% confidence, 1 item">')


def test_unknown_format(root: Path) -> None:
    with pytest.raises(ValueError, match="unknown format"):
        render(_result(), root, fmt="yaml")


def test_read_snippet_missing_file_falls_back_to_preview(tmp_path: Path) -> None:
    result = _result()
    assert read_snippet(tmp_path, result.hits[0]) is None
    assert "def main():" in render(result, tmp_path, snippets=True)


# ---------------------------------------------------------------------------
# Diff mode and line number width
# ---------------------------------------------------------------------------


def test_text_diff_marks_lines_as_added(root: Path) -> None:
    out = render(_result(), root, diff=True)
    assert "3 | + def main():" in out
    assert "4 | +     return os.getcwd()" in out


def test_text_diff_without_line_numbers(root: Path) -> None:
    out = render(_result(), root, diff=True, line_numbers=False)
    assert "      + def main():" in out
    assert " | " not in out


def test_line_number_width_is_a_minimum(root: Path) -> None:
    out = render(_result(), root, snippets=True, number_width=4)
    assert "         3 | def main():" in out

    hit = Hit(1, 4, 0.8, "src/app.py", 1, 1, "python", "import os")
    result = _result()
    result.hits[0] = hit
    narrow = render(result, root, snippets=True, number_width=1)
    assert "      1 | import os" in narrow


def test_json_diff_snippet(root: Path) -> None:
    rows = json.loads(render(_result(), root, fmt="json", diff=True, number_width=3))
    assert rows[0]["snippet"].splitlines()[0] == "  3 | + def main():"


def test_xml_snippet_lines(root: Path) -> None:
    out = render(_result(), root, fmt="xml", snippets=True)
    assert "<snippet>" in out
    assert '<line n="3">def main():</line>' in out
    assert "<text>" not in out


def test_xml_diff_lines(root: Path) -> None:
    out = render(_result(), root, fmt="xml", diff=True, line_numbers=False)
    assert '<line op="add">    return os.getcwd()</line>' in out
    assert " n=" not in out
