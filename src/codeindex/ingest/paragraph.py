"""Paragraph chunker — split on runs of blank lines."""

from __future__ import annotations

from codeindex.ingest.base import BaseChunker, Span, split_lines


class ParagraphChunker(BaseChunker):
    """Split text into blocks separated by ``gap`` or more blank lines.

    Blocks are merged up to the target window with the same overlap rule as
    the structural tier. Returns None when the text has fewer than two
    blocks (no paragraph structure to exploit, e.g. minified code).
    """

    tier = "paragraph"

    def __init__(self, lines: int = 160, overlap: int = 32, gap: int = 2) -> None:
        super().__init__(lines=lines, overlap=overlap)
        if gap < 1:
            raise ValueError("gap must be >= 1")
        self.gap = gap

    def chunk(self, text: str, lang: str = "text") -> list[Span] | None:
        lines = split_lines(text)
        starts = self._block_starts(lines)
        if len(starts) < 2:
            return None
        starts[0] = 1
        units = [
            (start, (starts[i + 1] - 1) if i + 1 < len(starts) else len(lines))
            for i, start in enumerate(starts)
        ]
        return self._finish(lines, units)

    def _block_starts(self, lines: list[str]) -> list[int]:
        """1-based first line of every block that follows a long enough blank run."""
        starts: list[int] = []
        blank_run = 0
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                blank_run += 1
                continue
            if not starts or blank_run >= self.gap:
                starts.append(lineno)
            blank_run = 0
        return starts
