"""MetaStore — chunk provenance persisted as meta.jsonl (one record per line)."""

from __future__ import annotations

import json
from collections.abc import Iterable, Iterator
from pathlib import Path

from codeindex.errors import CorruptIndexError, IndexIOError
from codeindex.store.models import MetaRecord


class MetaStore:
    """In-memory view of meta.jsonl keyed by chunk id.

    Records are immutable; a changed chunk is removed and re-added under the
    id derived from its new location and content (see ``chunk_id``).
    Serialization orders records by id so identical content produces
    identical bytes.
    """

    def __init__(self, records: Iterable[MetaRecord] = ()) -> None:
        self._rows: dict[int, MetaRecord] = {}
        self._by_path: dict[str, list[int]] = {}
        self.append(records)

    def __len__(self) -> int:
        return len(self._rows)

    def __contains__(self, chunk_id: int) -> bool:
        return chunk_id in self._rows

    def __iter__(self) -> Iterator[MetaRecord]:
        for chunk_id in sorted(self._rows):
            yield self._rows[chunk_id]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, chunk_id: int) -> MetaRecord | None:
        return self._rows.get(chunk_id)

    def ids(self) -> list[int]:
        return sorted(self._rows)

    def paths(self) -> list[str]:
        return sorted(self._by_path)

    def rows_for_path(self, path: str) -> list[MetaRecord]:
        return sorted(
            (self._rows[i] for i in self._by_path.get(path, ())),
            key=lambda r: (r.start, r.end, r.id),
        )

    def file_hashes(self) -> dict[str, str]:
        """Map every indexed path to the file hash recorded when it was chunked."""
        return {
            path: self._rows[ids[0]].file_sha256
            for path, ids in self._by_path.items()
            if ids
        }

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def append(self, records: Iterable[MetaRecord]) -> None:
        for record in records:
            if record.id in self._rows:
                raise ValueError(f"duplicate chunk id {record.id}")
            self._rows[record.id] = record
            self._by_path.setdefault(record.path, []).append(record.id)

    def remove_paths(self, paths: Iterable[str]) -> list[int]:
        """Drop every record owned by *paths*; returns the removed ids."""
        removed: list[int] = []
        for path in set(paths):
            for chunk_id in self._by_path.pop(path, []):
                del self._rows[chunk_id]
                removed.append(chunk_id)
        return sorted(removed)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_bytes(self) -> bytes:
        return "".join(record.to_json() + "\n" for record in self).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> MetaStore:
        """Parse meta.jsonl content.

        Raises:
            CorruptIndexError: If a line is not a valid record or an id repeats.
        """
        store = cls()
        for lineno, line in enumerate(data.decode("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = MetaRecord.from_dict(json.loads(line))
                store.append([record])
            except (ValueError, KeyError, TypeError) as exc:
                raise CorruptIndexError(f"meta.jsonl line {lineno}: {exc}") from exc
        return store

    @classmethod
    def load(cls, path: Path) -> MetaStore:
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise IndexIOError(f"cannot read '{path}': {exc}") from exc
        try:
            return cls.from_bytes(data)
        except UnicodeDecodeError as exc:
            raise CorruptIndexError(f"meta.jsonl is not UTF-8: {exc}") from exc
