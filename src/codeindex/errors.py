"""Exception taxonomy for the code index.

Every failure the index can raise derives from ``CodeIndexError`` so callers
(the CLI, the chat bridge, the background scheduler) can degrade with one
``except`` clause. ``exit_code`` is the process status the CLI maps it to.
"""

from __future__ import annotations

EXIT_OK = 0
EXIT_NO_INDEX = 2
EXIT_BUILD_FAILED = 3
EXIT_VERIFY_FAILED = 4
EXIT_BUILD_IN_PROGRESS = 5


class CodeIndexError(Exception):
    """Base class for all index failures."""

    exit_code: int = EXIT_BUILD_FAILED


class NoIndexError(CodeIndexError):
    """No committed index generation exists for the project."""

    exit_code = EXIT_NO_INDEX


class ConfigMismatchError(CodeIndexError):
    """Persisted index does not match the active model/dimension/metric.

    Not fatal: a build treats it as a request for a full rebuild, a query
    treats it as "no usable index".
    """

    exit_code = EXIT_NO_INDEX

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = list(reasons)
        super().__init__("; ".join(self.reasons) or "index configuration mismatch")


class IndexIOError(CodeIndexError):
    """Disk I/O failed while reading or writing index artifacts."""


class CorruptIndexError(CodeIndexError):
    """A persisted artifact failed a checksum or structural check."""

    exit_code = EXIT_VERIFY_FAILED


class EncoderUnavailableError(CodeIndexError):
    """The embedding model could not be loaded."""


class BuildInProgressError(CodeIndexError):
    """Another live process holds the build lock."""

    exit_code = EXIT_BUILD_IN_PROGRESS

    def __init__(self, pid: int | None = None, started_at: str | None = None) -> None:
        self.pid = pid
        self.started_at = started_at
        detail = f" (pid {pid}, since {started_at})" if pid else ""
        super().__init__(f"build in progress{detail}")
