"""Structural chunker — one unit per top-level syntax node (tree-sitter)."""

from __future__ import annotations

from codeindex.ingest.base import BaseChunker, Span, split_lines
from codeindex.ingest.languages import GRAMMARS, LEADING_TYPES, load_language


class StructuralChunker(BaseChunker):
    """Cut a file at top-level definitions found by a tree-sitter grammar.

    Every top-level definition (function, class, impl, type, ...) starts a
    new unit. Comments and attributes directly above a definition travel
    with it; other top-level statements (imports, constants) stay with the
    unit before them, or form the leading module section. Units are then
    merged up to the target window and padded with overlap.

    Returns None when no grammar is installed for the language or the file
    has no top-level definition.
    """

    tier = "structural"

    def chunk(self, text: str, lang: str = "text") -> list[Span] | None:
        grammar = GRAMMARS.get(lang)
        language = load_language(lang) if grammar else None
        if grammar is None or language is None:
            return None

        from tree_sitter import Parser

        parser = Parser(language)
        tree = parser.parse(text.encode("utf-8"))
        lines = split_lines(text)
        if not lines:
            return []

        cuts = self._cut_lines(tree.root_node.children, grammar.unit_types)
        if not cuts:
            return None

        bounds = sorted({1, *cuts})
        units = [
            (start, (bounds[i + 1] - 1) if i + 1 < len(bounds) else len(lines))
            for i, start in enumerate(bounds)
        ]
        units = [(s, e) for s, e in units if s <= e]
        return self._finish(lines, units)

    @staticmethod
    def _cut_lines(children: list, unit_types: frozenset[str]) -> list[int]:
        """Return the 1-based first line of every top-level unit."""
        cuts: list[int] = []
        for i, node in enumerate(children):
            if node.type not in unit_types:
                continue
            first = node
            j = i - 1
            while j >= 0 and children[j].type in LEADING_TYPES:
                if first.start_point[0] - children[j].end_point[0] > 1:
                    break
                first = children[j]
                j -= 1
            cuts.append(first.start_point[0] + 1)
        return cuts
