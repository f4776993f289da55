"""DeltaResolver — file-level changes since the last indexed snapshot.

Git mode asks git which paths changed since the manifest's recorded commit
(plus untracked files, paths deferred by an earlier capped pass, and
paths that had uncommitted edits when the snapshot was taken), then
confirms each candidate by content hash. Hash mode hashes every eligible
file. Both modes produce the same sets for the same tree; git mode only
reads fewer files.
"""

from __future__ import annotations

import hashlib
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from codeindex.ingest.pathfilter import PathFilter
from codeindex.log import get_logger
from codeindex.store.manifest import Manifest
from codeindex.store.meta import MetaStore

log = get_logger(__name__)

_HASH_BLOCK = 1 << 20


@dataclass
class Delta:
    """Disjoint sets of changed paths (posix, relative to the project root)."""

    added: set[str] = field(default_factory=set)
    modified: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)
    untracked: set[str] = field(default_factory=set)
    mode: str = "hash"
    hashes: dict[str, str] = field(default_factory=dict)

    @property
    def empty(self) -> bool:
        return not (self.added or self.modified or self.deleted or self.untracked)

    def to_index(self) -> list[str]:
        """Paths that need (re)chunking, sorted."""
        return sorted(self.added | self.modified | self.untracked)


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        while block := fh.read(_HASH_BLOCK):
            digest.update(block)
    return digest.hexdigest()


# ---------------------------------------------------------------------------
# git helpers
# ---------------------------------------------------------------------------


def _git(root: Path, *args: str) -> str | None:
    """Run git in *root*; return stdout, or None if git is missing or fails."""
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            shell=False,
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return result.stdout


def git_head(root: Path) -> str | None:
    """Current HEAD commit of the work tree containing *root*, or None."""
    out = _git(root, "rev-parse", "--verify", "--quiet", "HEAD")
    return out.strip() if out and out.strip() else None


def _git_changed_paths(root: Path, since: str) -> tuple[list[str], set[str]] | None:
    """``(changed, untracked)`` paths since *since*, relative to *root*."""
    if _git(root, "cat-file", "-e", f"{since}^{{commit}}") is None:
        return None
    diff = _git(root, "diff", "-z", "--name-status", "--no-renames", "--relative", since, "--")
    untracked = _git(root, "ls-files", "-z", "--others", "--exclude-standard")
    if diff is None or untracked is None:
        return None
    # -z output: status NUL path NUL ...
    fields = [f for f in diff.split("\0") if f]
    changed = fields[1::2]
    return changed, {p for p in untracked.split("\0") if p}


def git_dirty_paths(root: Path) -> set[str] | None:
    """Paths under *root* that differ from HEAD in the work tree, untracked included."""
    diff = _git(root, "diff", "-z", "--name-only", "--no-renames", "--relative", "HEAD", "--")
    untracked = _git(root, "ls-files", "-z", "--others", "--exclude-standard")
    if diff is None or untracked is None:
        return None
    return {p for p in (diff + untracked).split("\0") if p}


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class DeltaResolver:
    """Compute the Delta between MetaStore's recorded file hashes and the tree."""

    def __init__(self, root: Path, path_filter: PathFilter) -> None:
        self.root = root.resolve()
        self.filter = path_filter

    def resolve(self, meta: MetaStore, manifest: Manifest | None) -> Delta:
        """Git mode when the manifest's commit is still resolvable, else hash mode."""
        indexed = meta.file_hashes()
        since = manifest.git_sha if manifest is not None else None
        if since:
            found = _git_changed_paths(self.root, since)
            if found is not None:
                changed, untracked = found
                candidates = set(changed) | untracked | set(manifest.pending)
                # Edited when the snapshot was taken; a revert since then is
                # invisible to git diff.
                candidates |= set(manifest.dirty)
                # Indexed paths that vanished or became ignored outside git's view.
                candidates |= {p for p in indexed if not self.filter.is_eligible(p)}
                log.debug("delta.git", since=since, candidates=len(candidates))
                return self._classify(sorted(candidates), indexed, untracked=untracked)
            log.info("delta.git_unavailable", since=since)
        return self._full_scan(indexed)

    def _full_scan(self, indexed: dict[str, str]) -> Delta:
        eligible = set(self.filter.iter_eligible())
        return self._classify(sorted(eligible | set(indexed)), indexed, eligible=eligible)

    def _classify(
        self,
        candidates: list[str],
        indexed: dict[str, str],
        untracked: set[str] | None = None,
        eligible: set[str] | None = None,
    ) -> Delta:
        delta = Delta(mode="hash" if untracked is None else "git")
        for rel in candidates:
            ok = rel in eligible if eligible is not None else self.filter.is_eligible(rel)
            if not ok:
                if rel in indexed:
                    delta.deleted.add(rel)
                continue
            try:
                digest = file_sha256(self.root / rel)
            except OSError as exc:
                log.warning("delta.unreadable", path=rel, error=str(exc))
                if rel in indexed:
                    delta.deleted.add(rel)
                continue
            delta.hashes[rel] = digest
            previous = indexed.get(rel)
            if previous is None:
                if untracked is not None and rel in untracked:
                    delta.untracked.add(rel)
                else:
                    delta.added.add(rel)
            elif previous != digest:
                delta.modified.add(rel)
        return delta
