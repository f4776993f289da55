"""Verifier — consistency checks for a persisted index generation.

Checks, in order: the manifest exists and parses, the schema version is
current, both artifacts exist and match the manifest checksums, both parse,
the vector file agrees with the manifest on dimension, count, and generation,
and every meta id has exactly one vector and vice versa. Problems are
reported, never repaired.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

from codeindex.errors import CorruptIndexError, IndexIOError
from codeindex.store.atomic import sha256_file
from codeindex.store.manifest import (
    INDEX_VERSION,
    MANIFEST_NAME,
    META_NAME,
    VECTORS_NAME,
    Manifest,
)
from codeindex.store.meta import MetaStore
from codeindex.store.vectors import VectorStore


class ProblemKind(str, enum.Enum):
    MISSING_MANIFEST = "missing_manifest"
    MANIFEST_UNREADABLE = "manifest_unreadable"
    SCHEMA_MISMATCH = "schema_mismatch"
    MISSING_ARTIFACT = "missing_artifact"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    VECTORS_UNREADABLE = "vectors_unreadable"
    META_UNREADABLE = "meta_unreadable"
    DIMENSION_MISMATCH = "dimension_mismatch"
    COUNT_MISMATCH = "count_mismatch"
    DUPLICATE_ID = "duplicate_id"
    ID_MISMATCH = "id_mismatch"
    GENERATION_MISMATCH = "generation_mismatch"


@dataclass(frozen=True)
class Problem:
    kind: ProblemKind
    detail: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.detail}"


@dataclass
class VerifyReport:
    problems: list[Problem] = field(default_factory=list)
    manifest: Manifest | None = None
    recall: float | None = None

    @property
    def ok(self) -> bool:
        return not self.problems

    def kinds(self) -> set[ProblemKind]:
        return {p.kind for p in self.problems}

    def add(self, kind: ProblemKind, detail: str) -> None:
        self.problems.append(Problem(kind, detail))


def check_pair(
    vectors_path: Path,
    meta_path: Path,
    expected_dim: int,
    expected_generation: int | None = None,
    recall_sample: int | None = None,
) -> VerifyReport:
    """Structural checks of a (vectors, meta) pair, staged or committed."""
    report = VerifyReport()
    try:
        meta = MetaStore.load(meta_path)
    except CorruptIndexError as exc:
        if "duplicate chunk id" in str(exc):
            report.add(ProblemKind.DUPLICATE_ID, str(exc))
        else:
            report.add(ProblemKind.META_UNREADABLE, str(exc))
        return report
    except IndexIOError as exc:
        report.add(ProblemKind.META_UNREADABLE, str(exc))
        return report

    try:
        with VectorStore.open(vectors_path) as vectors:
            if vectors.dim != expected_dim:
                report.add(
                    ProblemKind.DIMENSION_MISMATCH,
                    f"vectors are {vectors.dim}-d, manifest says {expected_dim}-d",
                )
            if expected_generation is not None and vectors.generation != expected_generation:
                report.add(
                    ProblemKind.GENERATION_MISMATCH,
                    f"vectors belong to generation {vectors.generation}, "
                    f"manifest to {expected_generation}",
                )
            if len(vectors) != len(meta):
                report.add(
                    ProblemKind.COUNT_MISMATCH,
                    f"{len(vectors)} vectors vs {len(meta)} meta records",
                )
            vector_ids = set(vectors.ids())
            meta_ids = set(meta.ids())
            if vector_ids != meta_ids:
                only_v = sorted(vector_ids - meta_ids)[:5]
                only_m = sorted(meta_ids - vector_ids)[:5]
                report.add(
                    ProblemKind.ID_MISMATCH,
                    f"ids only in vectors: {only_v}; ids only in meta: {only_m}",
                )
            if recall_sample and report.ok:
                report.recall = vectors.recall_at_1(sample=recall_sample)
    except (CorruptIndexError, IndexIOError) as exc:
        report.add(ProblemKind.VECTORS_UNREADABLE, str(exc))
    return report


class Verifier:
    """Validate the committed generation in *index_dir*."""

    def __init__(self, index_dir: Path) -> None:
        self.index_dir = index_dir

    def verify(self, recall_sample: int | None = None) -> VerifyReport:
        report = VerifyReport()
        manifest_path = self.index_dir / MANIFEST_NAME
        if not manifest_path.exists():
            report.add(ProblemKind.MISSING_MANIFEST, f"'{manifest_path}' not found")
            return report
        try:
            manifest = Manifest.load(manifest_path)
        except (CorruptIndexError, IndexIOError) as exc:
            report.add(ProblemKind.MANIFEST_UNREADABLE, str(exc))
            return report
        report.manifest = manifest

        if manifest.index_version != INDEX_VERSION:
            report.add(
                ProblemKind.SCHEMA_MISMATCH,
                f"index version {manifest.index_version}, expected {INDEX_VERSION}",
            )
            return report

        artifacts = {
            "vectors": self.index_dir / VECTORS_NAME,
            "meta": self.index_dir / META_NAME,
        }
        for key, path in artifacts.items():
            if not path.exists():
                report.add(ProblemKind.MISSING_ARTIFACT, f"'{path.name}' not found")
                continue
            try:
                actual = sha256_file(path)
            except OSError as exc:
                report.add(ProblemKind.MISSING_ARTIFACT, f"cannot read '{path.name}': {exc}")
                continue
            expected = manifest.checksums.get(key, "")
            if actual != expected:
                report.add(
                    ProblemKind.CHECKSUM_MISMATCH,
                    f"'{path.name}' sha256 {actual[:12]}… != manifest {expected[:12] or '<none>'}…",
                )
        if not report.ok:
            return report

        pair = check_pair(
            artifacts["vectors"],
            artifacts["meta"],
            expected_dim=manifest.dim,
            expected_generation=manifest.generation,
            recall_sample=recall_sample,
        )
        report.problems.extend(pair.problems)
        report.recall = pair.recall
        chunks = manifest.counts.get("chunks")
        if pair.ok and chunks is not None:
            meta = MetaStore.load(artifacts["meta"])
            if chunks != len(meta):
                report.add(
                    ProblemKind.COUNT_MISMATCH,
                    f"manifest records {chunks} chunks, meta.jsonl holds {len(meta)}",
                )
            files = manifest.counts.get("files")
            if files is not None and files != len(meta.paths()):
                report.add(
                    ProblemKind.COUNT_MISMATCH,
                    f"manifest records {files} files, meta.jsonl covers {len(meta.paths())}",
                )
        return report
