"""Fixed-window chunker — line windows with overlap, the last-resort tier."""

from __future__ import annotations

from codeindex.ingest.base import BaseChunker, Span, split_lines


class FixedWindowChunker(BaseChunker):
    """Split text into ``lines``-line windows, each repeating ``overlap`` lines.

    Default: 160 lines / 32 lines overlap. Always applies; an empty or
    whitespace-only text yields no spans.
    """

    tier = "fixed"

    def chunk(self, text: str, lang: str = "text") -> list[Span]:
        if not text.strip():
            return []
        lines = split_lines(text)
        return self._spans(lines, self._windows(1, len(lines)))
