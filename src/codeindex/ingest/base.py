"""Base chunker interface shared by all chunking tiers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

_PREVIEW_LINES = 8
_PREVIEW_CHARS = 800


@dataclass(frozen=True)
class Span:
    """A contiguous line range of one file (1-based, inclusive)."""

    start: int
    end: int
    text: str

    @property
    def preview(self) -> str:
        return make_preview(self.text)


def make_preview(text: str) -> str:
    """First lines of *text*, bounded in both line count and characters."""
    return "\n".join(text.split("\n")[:_PREVIEW_LINES])[:_PREVIEW_CHARS]


def split_lines(text: str) -> list[str]:
    """Split *text* on ``\\n`` only; a trailing newline does not add a line."""
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


class BaseChunker(ABC):
    """Abstract base for all chunking tiers.

    Subclasses implement ``chunk()`` and return ``None`` when their tier does
    not apply to the text, which lets the caller fall through to the next tier.
    The helpers below implement the shared window-merge and overlap logic.

    Args:
        lines: Target span length in lines.
        overlap: Lines repeated at the start of every span after the first.
            Clamped to ``lines // 2``.
    """

    tier: str = ""

    def __init__(self, lines: int = 160, overlap: int = 32) -> None:
        if lines < 1:
            raise ValueError("lines must be >= 1")
        if overlap < 0:
            raise ValueError("overlap must be >= 0")
        self.lines = lines
        self.overlap = min(overlap, lines // 2)

    @abstractmethod
    def chunk(self, text: str, lang: str = "text") -> list[Span] | None:
        """Split *text* into spans, or return None if this tier does not apply."""

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _windows(self, first: int, last: int) -> list[tuple[int, int]]:
        """Fixed windows of ``self.lines`` over ``[first, last]`` stepping by lines - overlap."""
        ranges: list[tuple[int, int]] = []
        cur = first
        while cur <= last:
            end = min(cur + self.lines - 1, last)
            ranges.append((cur, end))
            if end == last:
                break
            nxt = end - self.overlap + 1
            if nxt <= cur:
                break
            cur = nxt
        return ranges

    def _merge(self, units: list[tuple[int, int]]) -> list[tuple[int, int]]:
        """Merge adjacent units until each range reaches the target window."""
        if not units:
            return []
        merged: list[tuple[int, int]] = []
        cur_start, cur_end = units[0]
        for start, end in units[1:]:
            if end - cur_start + 1 <= self.lines:
                cur_end = end
            else:
                merged.append((cur_start, cur_end))
                cur_start, cur_end = start, end
        merged.append((cur_start, cur_end))
        return merged

    def _finish(self, lines: list[str], units: list[tuple[int, int]]) -> list[Span]:
        """Merge units, pad with overlap, split oversized ranges, emit spans."""
        ranges: list[tuple[int, int]] = []
        for i, (start, end) in enumerate(self._merge(units)):
            if i > 0:
                start = max(1, start - self.overlap)
            if end - start + 1 > 2 * self.lines:
                ranges.extend(self._windows(start, end))
            else:
                ranges.append((start, end))
        return self._spans(lines, ranges)

    @staticmethod
    def _spans(lines: list[str], ranges: list[tuple[int, int]]) -> list[Span]:
        spans: list[Span] = []
        for start, end in ranges:
            text = "\n".join(lines[start - 1 : end])
            if text.strip():
                spans.append(Span(start=start, end=end, text=text))
        return spans
