"""File eligibility: ignore rules, size caps, and binary detection.

Two rule sources decide whether a path is ignored:
  - version-control ignore files (.gitignore at any depth, .git/info/exclude)
  - the project-local ignore list kept in the index directory

Both use gitignore semantics (``pathspec.GitIgnoreSpec``). The
content checks only look at a fixed probe window from the start of the file.
"""

from __future__ import annotations

import codecs
import enum
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import pathspec

from codeindex.log import get_logger

log = get_logger(__name__)

IGNORE_LIST_NAME = "ignore-list"

DEFAULT_IGNORE = """\
# Patterns ignored by the local code index (gitignore syntax)
# Hidden files/dirs
.*
# VCS / tooling / caches
.git
.codeindex
.idea
.vscode
__pycache__
node_modules
target
dist
build
"""

# Leading bytes of common binary formats.
_MAGIC_PREFIXES: tuple[bytes, ...] = (
    b"%PDF-",
    b"PK\x03\x04",
    b"\x7fELF",
    b"\x89PNG\r\n\x1a\n",
    b"MZ",
    b"GIF87a",
    b"GIF89a",
    b"\xff\xd8\xff",
    b"\x1f\x8b",
    b"\xca\xfe\xba\xbe",
)


class Decision(enum.Enum):
    ELIGIBLE = "eligible"
    IGNORED = "ignored"
    TOO_LARGE = "too_large"
    BINARY = "binary"

    @property
    def eligible(self) -> bool:
        return self is Decision.ELIGIBLE


# ---------------------------------------------------------------------------
# Ignore rule set
# ---------------------------------------------------------------------------


def _parse_patterns(text: str) -> list[str]:
    return [
        line.strip()
        for line in text.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]


class IgnoreRuleSet:
    """Ordered, user-editable glob patterns persisted as plain text.

    The file is created with ``DEFAULT_IGNORE`` on first use. Edits go
    through ``add``/``remove``/``reset``; each edit rewrites the file sorted
    and de-duplicated.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def patterns(self) -> list[str]:
        """Return the active patterns, creating the default file if missing."""
        if not self.path.exists():
            self._write_raw(DEFAULT_IGNORE)
        try:
            return _parse_patterns(self.path.read_text(encoding="utf-8"))
        except OSError:
            log.warning("ignore_list.unreadable", path=str(self.path), exc_info=True)
            return _parse_patterns(DEFAULT_IGNORE)

    def add(self, *patterns: str) -> list[str]:
        return self._save(self.patterns() + [p.strip() for p in patterns if p.strip()])

    def remove(self, *patterns: str) -> list[str]:
        drop = {p.strip() for p in patterns}
        return self._save([p for p in self.patterns() if p not in drop])

    def reset(self) -> list[str]:
        self._write_raw(DEFAULT_IGNORE)
        return self.patterns()

    def spec(self) -> pathspec.GitIgnoreSpec:
        return pathspec.GitIgnoreSpec.from_lines(self.patterns())

    def _save(self, patterns: list[str]) -> list[str]:
        ordered = sorted(set(patterns))
        self._write_raw("\n".join(ordered) + "\n" if ordered else "")
        return ordered

    def _write_raw(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(text, encoding="utf-8")


# ---------------------------------------------------------------------------
# Binary detection
# ---------------------------------------------------------------------------


def looks_binary(probe: bytes) -> bool:
    """Return True if *probe* (the first bytes of a file) is not UTF-8 text.

    A multibyte sequence truncated by the end of the probe window does not
    count as invalid.
    """
    if not probe:
        return False
    if probe.startswith(_MAGIC_PREFIXES):
        return True
    if probe.count(0) * 10 > len(probe):
        return True
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        decoder.decode(probe, final=False)
    except UnicodeDecodeError:
        return True
    return False


# ---------------------------------------------------------------------------
# Path filter
# ---------------------------------------------------------------------------


@dataclass
class _ScopedSpec:
    """A .gitignore spec anchored at the directory that contains it."""

    base: str  # posix path relative to root, "" for the root itself
    spec: pathspec.GitIgnoreSpec

    def matches(self, rel_path: str, is_dir: bool) -> bool:
        if self.base:
            if not rel_path.startswith(self.base + "/"):
                return False
            rel_path = rel_path[len(self.base) + 1 :]
        return self.spec.match_file(rel_path + "/" if is_dir else rel_path)


class PathFilter:
    """Decide which files under *root* are eligible for indexing.

    Args:
        root: Project root; all decisions use paths relative to it.
        rules: Project-local ignore list.
        max_file_size: Files larger than this many bytes are skipped.
        probe_bytes: Size of the window read for binary detection.
        use_vcs_ignores: Honor .gitignore / .git/info/exclude files.
    """

    def __init__(
        self,
        root: Path,
        rules: IgnoreRuleSet,
        max_file_size: int = 5 * 1024 * 1024,
        probe_bytes: int = 8192,
        use_vcs_ignores: bool = True,
    ) -> None:
        self.root = root.resolve()
        self.max_file_size = max_file_size
        self.probe_bytes = probe_bytes
        self._local = rules.spec()
        self._use_vcs = use_vcs_ignores
        self._vcs: dict[str, _ScopedSpec | None] = {}
        if use_vcs_ignores:
            exclude = self.root / ".git" / "info" / "exclude"
            if exclude.is_file():
                self._vcs[".git/info/exclude"] = _ScopedSpec("", _read_spec(exclude))

    # ------------------------------------------------------------------
    # Pure decisions
    # ------------------------------------------------------------------

    def is_ignored(self, rel_path: str, is_dir: bool = False) -> bool:
        """Return True if *rel_path* (posix, relative to root) matches an ignore rule."""
        candidate = rel_path + "/" if is_dir else rel_path
        if self._local.match_file(candidate):
            return True
        if not self._use_vcs:
            return False
        self._load_gitignores_for(rel_path)
        return any(
            scoped is not None and scoped.matches(rel_path, is_dir)
            for scoped in self._vcs.values()
        )

    def decide(self, rel_path: str, size: int, probe: bytes) -> Decision:
        """Classify one file from its path, size, and leading bytes."""
        if self._is_path_ignored(rel_path):
            return Decision.IGNORED
        if size > self.max_file_size:
            return Decision.TOO_LARGE
        if looks_binary(probe):
            return Decision.BINARY
        return Decision.ELIGIBLE

    # ------------------------------------------------------------------
    # Filesystem helpers
    # ------------------------------------------------------------------

    def check(self, rel_path: str) -> Decision:
        """Stat and probe *rel_path* on disk, then ``decide``.

        Raises:
            OSError: If the file cannot be read.
        """
        path = self.root / rel_path
        if path.is_symlink() or not path.is_file():
            return Decision.IGNORED
        size = path.stat().st_size
        with path.open("rb") as fh:
            probe = fh.read(self.probe_bytes)
        return self.decide(rel_path, size, probe)

    def is_eligible(self, rel_path: str) -> bool:
        """Like ``check`` but unreadable files are logged and reported ineligible."""
        try:
            return self.check(rel_path).eligible
        except OSError as exc:
            log.warning("pathfilter.unreadable", path=rel_path, error=str(exc))
            return False

    def iter_eligible(self) -> Iterator[str]:
        """Yield eligible file paths (posix, relative to root) in sorted order."""
        for rel_path in self._walk(self.root, ""):
            if self.is_eligible(rel_path):
                yield rel_path

    def _walk(self, directory: Path, rel_dir: str) -> Iterator[str]:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as exc:
            log.warning("pathfilter.unreadable_dir", path=rel_dir or ".", error=str(exc))
            return
        for entry in entries:
            rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            try:
                if entry.is_symlink():
                    continue
                if entry.is_dir(follow_symlinks=False):
                    if not self.is_ignored(rel, is_dir=True):
                        yield from self._walk(Path(entry.path), rel)
                elif entry.is_file(follow_symlinks=False):
                    yield rel
            except OSError as exc:
                log.warning("pathfilter.unreadable", path=rel, error=str(exc))

    def _is_path_ignored(self, rel_path: str) -> bool:
        """A file is ignored when it or any parent directory matches."""
        parts = PurePosixPath(rel_path).parts
        for i in range(1, len(parts)):
            if self.is_ignored("/".join(parts[:i]), is_dir=True):
                return True
        return self.is_ignored(rel_path)

    def _load_gitignores_for(self, rel_path: str) -> None:
        """Lazily compile .gitignore files of every directory above *rel_path*."""
        parts = PurePosixPath(rel_path).parts
        for i in range(len(parts)):
            base = "/".join(parts[:i])
            if base in self._vcs:
                continue
            gitignore = (self.root / base / ".gitignore") if base else self.root / ".gitignore"
            self._vcs[base] = (
                _ScopedSpec(base, _read_spec(gitignore)) if gitignore.is_file() else None
            )


def _read_spec(path: Path) -> pathspec.GitIgnoreSpec:
    try:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
    except OSError:
        log.warning("pathfilter.ignore_file_unreadable", path=str(path))
        lines = []
    return pathspec.GitIgnoreSpec.from_lines(lines)


def to_rel(root: Path, path: Path) -> str:
    """Return *path* relative to *root* in normalized posix form."""
    return PurePosixPath(os.path.relpath(path, root)).as_posix()
