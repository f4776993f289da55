"""codeindex ingest pipeline — path filtering, tiered chunking, embedding."""

from __future__ import annotations

from codeindex.config import ChunkingCfg
from codeindex.ingest.base import BaseChunker, Span
from codeindex.ingest.fixed_window import FixedWindowChunker
from codeindex.ingest.paragraph import ParagraphChunker
from codeindex.ingest.structural import StructuralChunker

__all__ = [
    "BaseChunker",
    "FixedWindowChunker",
    "ParagraphChunker",
    "Span",
    "StructuralChunker",
    "TieredChunker",
]


class TieredChunker:
    """Run the chunking tiers in order; the first tier that yields spans wins.

    ``mode="auto"``: structural → paragraph → fixed window.
    ``mode="lines"``: fixed window only.
    """

    def __init__(self, cfg: ChunkingCfg | None = None) -> None:
        cfg = cfg or ChunkingCfg()
        self.mode = cfg.mode
        fixed = FixedWindowChunker(lines=cfg.lines, overlap=cfg.overlap)
        if cfg.mode == "lines":
            self._tiers: list[BaseChunker] = [fixed]
        else:
            self._tiers = [
                StructuralChunker(lines=cfg.lines, overlap=cfg.overlap),
                ParagraphChunker(lines=cfg.lines, overlap=cfg.overlap, gap=cfg.paragraph_gap),
                fixed,
            ]

    def chunk(self, text: str, lang: str = "text") -> tuple[str, list[Span]]:
        """Return ``(tier name, spans)`` for *text*; empty text yields no spans."""
        if not text.strip():
            return "", []
        for tier in self._tiers:
            spans = tier.chunk(text, lang)
            if spans:
                return tier.tier, spans
        return "", []
