"""Query result renderers for the command line: text, JSON, XML.

Snippets are the current lines of each hit's span. ``diff`` marks every
snippet line as an addition (``+ `` in text, ``op="add"`` in XML) so the
output can be pasted where a patch-style excerpt is expected.
"""

from __future__ import annotations

import json
from pathlib import Path
from xml.sax.saxutils import escape, quoteattr

from codeindex.rag.retriever import NO_MATCH_MESSAGE, QueryResult
from codeindex.store.models import Hit

FORMATS = ("text", "json", "xml")


def read_snippet(root: Path, hit: Hit) -> list[str] | None:
    """Current lines ``hit.start..hit.end`` of the file, or None if unreadable."""
    try:
        text = (root / hit.path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return text.split("\n")[hit.start - 1 : hit.end]


def _snippet(root: Path, hit: Hit) -> list[tuple[int, str]]:
    lines = read_snippet(root, hit)
    if lines is None:
        lines = hit.preview.split("\n")
    return list(enumerate(lines, start=hit.start))


def _format_lines(
    lines: list[tuple[int, str]],
    line_numbers: bool,
    diff: bool,
    number_width: int | None,
) -> list[str]:
    marker = "+ " if diff else ""
    if not line_numbers:
        return [marker + text for _, text in lines]
    width = max(len(str(lines[-1][0])) if lines else 1, number_width or 0)
    return [f"{n:>{width}} | {marker}{text}" for n, text in lines]


def render_text(
    result: QueryResult,
    root: Path,
    snippets: bool = False,
    line_numbers: bool = True,
    diff: bool = False,
    number_width: int | None = None,
) -> str:
    if not result.confident:
        return NO_MATCH_MESSAGE
    out = [f"{result.summary}"]
    for hit in result.hits:
        out.append(f"{hit.rank:>2}. {hit.score:.3f}  {hit.path}:{hit.start}-{hit.end}  [{hit.lang}]")
        if snippets:
            lines = _format_lines(_snippet(root, hit), line_numbers, diff, number_width)
            out.extend("      " + line for line in lines)
    return "\n".join(out)


def render_json(
    result: QueryResult,
    root: Path,
    snippets: bool = False,
    line_numbers: bool = True,
    diff: bool = False,
    number_width: int | None = None,
) -> str:
    if not result.confident:
        return "[]"
    rows = []
    for hit in result.hits:
        row = {
            "rank": hit.rank,
            "id": hit.id,
            "score": round(hit.score, 6),
            "path": hit.path,
            "start": hit.start,
            "end": hit.end,
            "lang": hit.lang,
            "preview": hit.preview,
        }
        if snippets:
            lines = _format_lines(_snippet(root, hit), line_numbers, diff, number_width)
            row["snippet"] = "\n".join(lines)
        rows.append(row)
    return json.dumps(rows, indent=2, ensure_ascii=False)


def render_xml(
    result: QueryResult,
    root: Path,
    snippets: bool = False,
    line_numbers: bool = True,
    diff: bool = False,
    number_width: int | None = None,
) -> str:
    # number_width only pads text columns; XML carries the number as an attribute.
    if not result.confident:
        return "<results/>"
    out = [f"<results summary={quoteattr(result.summary or '')}>"]
    for hit in result.hits:
        out.append(
            f"  <result rank=\"{hit.rank}\" score=\"{hit.score:.6f}\" path={quoteattr(hit.path)} "
            f"start=\"{hit.start}\" end=\"{hit.end}\" lang={quoteattr(hit.lang)}>"
        )
        if snippets:
            out.append("    <snippet>")
            for n, text in _snippet(root, hit):
                attrs = (f' n="{n}"' if line_numbers else "") + (' op="add"' if diff else "")
                out.append(f"      <line{attrs}>{escape(text)}</line>")
            out.append("    </snippet>")
        else:
            out.append(f"    <text>{escape(hit.preview)}</text>")
        out.append("  </result>")
    out.append("</results>")
    return "\n".join(out)


def render(
    result: QueryResult,
    root: Path,
    fmt: str = "text",
    snippets: bool = False,
    line_numbers: bool = True,
    diff: bool = False,
    number_width: int | None = None,
) -> str:
    """Render *result* as *fmt*; ``diff`` implies ``snippets``."""
    renderers = {"text": render_text, "json": render_json, "xml": render_xml}
    if fmt not in renderers:
        raise ValueError(f"unknown format '{fmt}', expected one of {FORMATS}")
    return renderers[fmt](
        result,
        root,
        snippets=snippets or diff,
        line_numbers=line_numbers,
        diff=diff,
        number_width=number_width,
    )
