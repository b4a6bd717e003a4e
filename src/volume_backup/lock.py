from __future__ import annotations

import fcntl
import logging
import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, TextIO

LOG = logging.getLogger(__name__)


class RunLockError(Exception):
    """Raised when the host lock cannot be taken."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cannot lock {path}: {reason}")
        self.path = path


class RunLockBusy(RunLockError):
    """Raised when another run already holds the host lock."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, "another backup run holds it")


class RunLock:
    """Host-scoped, non-blocking advisory lock around a single backup run.

    Distinct hosts get distinct lock files, so hosts sharing one lock
    directory (for instance over NFS) never block each other.
    """

    def __init__(self, lock_dir: Path, host: str) -> None:
        self._path = Path(lock_dir) / f"volume-backup-{_sanitize(host)}.lock"

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def hold(self) -> Iterator[Path]:
        handle = self._acquire()
        try:
            yield self._path
        finally:
            self._release(handle)

    def _acquire(self) -> TextIO:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            handle = self._path.open("a+", encoding="utf-8")
        except OSError as exc:
            raise RunLockError(self._path, str(exc)) from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            handle.close()
            raise RunLockBusy(self._path) from exc
        except OSError as exc:
            handle.close()
            raise RunLockError(self._path, str(exc)) from exc

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        LOG.debug("Acquired run lock %s", self._path)
        return handle

    def _release(self, handle: TextIO) -> None:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
        LOG.debug("Released run lock %s", self._path)


def _sanitize(host: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", host) or "localhost"
