"""BuildLock — exclusive writer lock backed by a lock file in the index directory."""

from __future__ import annotations

import json
import os
import socket
from dataclasses import dataclass
from pathlib import Path

from codeindex.errors import BuildInProgressError, IndexIOError
from codeindex.log import get_logger
from codeindex.store.manifest import LOCK_NAME, utc_now

log = get_logger(__name__)


@dataclass(frozen=True)
class LockOwner:
    pid: int
    host: str
    started_at: str


def pid_alive(pid: int) -> bool:
    """Return True if a process with *pid* exists on this host."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user.
        return True
    except OSError:
        return False
    return True


def read_owner(path: Path) -> LockOwner | None:
    """Parse the lock file; None if it is missing or unreadable."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return LockOwner(
            pid=int(data["pid"]),
            host=str(data.get("host", "")),
            started_at=str(data.get("started_at", "")),
        )
    except (OSError, ValueError, KeyError, TypeError):
        return None


class BuildLock:
    """Hold ``<index_dir>/lock`` for the duration of a build.

    The file is created with ``O_CREAT | O_EXCL``. A lock left by a process
    that no longer runs on this host, or whose content cannot be parsed, is
    stale and reclaimed. A live owner makes ``acquire`` fail immediately.

    Usage::

        with BuildLock(index_dir):
            ...
    """

    def __init__(self, index_dir: Path) -> None:
        self.path = index_dir / LOCK_NAME
        self._held = False

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            BuildInProgressError: If another live process holds it.
            IndexIOError: If the lock file cannot be created.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise IndexIOError(f"cannot create '{self.path.parent}': {exc}") from exc

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                owner = read_owner(self.path)
                if owner is not None and not self._is_stale(owner):
                    raise BuildInProgressError(owner.pid, owner.started_at) from None
                log.warning(
                    "lock.stale_reclaimed",
                    path=str(self.path),
                    pid=owner.pid if owner else None,
                )
                self.path.unlink(missing_ok=True)
                continue
            except OSError as exc:
                raise IndexIOError(f"cannot create '{self.path}': {exc}") from exc

            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(
                    {"pid": os.getpid(), "host": socket.gethostname(), "started_at": utc_now()},
                    fh,
                )
            self._held = True
            return

        owner = read_owner(self.path)
        raise BuildInProgressError(owner.pid if owner else None, owner.started_at if owner else None)

    def release(self) -> None:
        if not self._held:
            return
        owner = read_owner(self.path)
        if owner is not None and owner.pid == os.getpid():
            self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> BuildLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    @staticmethod
    def _is_stale(owner: LockOwner) -> bool:
        if owner.host and owner.host != socket.gethostname():
            # Liveness of a process on another host cannot be checked.
            return False
        return not pid_alive(owner.pid)


def lock_status(index_dir: Path) -> LockOwner | None:
    """The live owner of the build lock, or None when no build is running."""
    path = index_dir / LOCK_NAME
    if not path.exists():
        return None
    owner = read_owner(path)
    if owner is None or BuildLock._is_stale(owner):
        return None
    return owner
