"""Domain models for the index store."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass


def chunk_id(path: str, start: int, end: int, sha256: str) -> int:
    """Stable id for a chunk: 63 bits of a hash over its location and content."""
    key = f"{path}\0{start}\0{end}\0{sha256}".encode("utf-8")
    digest = hashlib.blake2b(key, digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


@dataclass(frozen=True)
class MetaRecord:
    """Provenance of one chunk: one line of meta.jsonl."""

    id: int
    path: str
    start: int
    end: int
    lang: str
    sha256: str
    preview: str
    file_sha256: str

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: dict) -> MetaRecord:
        return cls(
            id=int(data["id"]),
            path=str(data["path"]),
            start=int(data["start"]),
            end=int(data["end"]),
            lang=str(data.get("lang", "text")),
            sha256=str(data["sha256"]),
            preview=str(data.get("preview", "")),
            file_sha256=str(data.get("file_sha256", "")),
        )


@dataclass(frozen=True)
class Hit:
    """One ranked search result joined with its chunk provenance."""

    rank: int
    id: int
    score: float
    path: str
    start: int
    end: int
    lang: str
    preview: str
