from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Protocol, Sequence

from .config import ProjectConfig, RetentionPolicy
from .retention import apply_retention
from .store import StoreError, StoreNotFound
from .volumes import FilesystemVolumeResolver

LOG = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


class SnapshotStore(Protocol):
    def check_binary(self) -> str:
        ...

    def read_repository_identity(self) -> str:
        ...

    def ensure_initialized(self) -> bool:
        ...

    def unlock(self, remove_all: bool = False) -> None:
        ...

    def backup(self, paths: Sequence[str], tags: Sequence[str]) -> str:
        ...

    def forget(self, tags: Sequence[str], policy: RetentionPolicy, prune: bool = False) -> str:
        ...

    def prune(self) -> str:
        ...


@dataclass
class ProjectResult:
    project: str
    status: str
    started_at: datetime
    completed_at: datetime
    paths: List[Path] = field(default_factory=list)
    missing: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    @property
    def duration(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProjectEngine:
    """Backs up one project and applies retention to its snapshots."""

    def __init__(
        self,
        store: SnapshotStore,
        resolver: FilesystemVolumeResolver,
        policy: RetentionPolicy,
        host: str,
        settle_seconds: float = 2,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._policy = policy
        self._host = host
        self._settle_seconds = settle_seconds
        self._sleep = sleep

    def run(self, project: ProjectConfig) -> ProjectResult:
        """Process a project; only StoreNotFound escapes, everything else lands in the result."""
        started_at = utcnow()
        LOG.info("-- Project: %s", project.name)
        try:
            return self._process(project, started_at)
        except StoreNotFound:
            raise
        except Exception as exc:  # noqa: BLE001
            LOG.exception("[%s] unexpected error", project.name)
            return self._result(project, STATUS_FAILED, started_at, errors=[f"unexpected error: {exc!r}"])

    def _process(self, project: ProjectConfig, started_at: datetime) -> ProjectResult:

        if not project.volumes:
            LOG.warning("[%s] no volumes defined; skipping", project.name)
            return self._result(project, STATUS_SKIPPED, started_at)

        resolved = self._resolver.resolve(project)
        if resolved.empty:
            LOG.warning("[%s] no valid volumes; skipping", project.name)
            return self._result(project, STATUS_SKIPPED, started_at, missing=resolved.missing)

        errors: List[str] = []
        paths = [str(path) for path in resolved.paths]
        LOG.info("[%s] starting backup of %s", project.name, ", ".join(paths))
        try:
            self._store.backup(paths, tags=[project.name, self._host])
        except StoreNotFound:
            raise
        except StoreError as exc:
            LOG.error("[%s] backup failed: %s", project.name, exc)
            errors.append(f"backup failed: {exc}")
            return self._result(project, STATUS_FAILED, started_at, resolved.paths, resolved.missing, errors)
        LOG.info("[%s] backup completed", project.name)

        self._unlock_quietly(project.name)
        if self._settle_seconds:
            self._sleep(self._settle_seconds)

        errors.extend(apply_retention(self._store, project.name, self._host, self._policy))
        status = STATUS_FAILED if errors else STATUS_OK
        result = self._result(project, status, started_at, resolved.paths, resolved.missing, errors)
        LOG.info("-- Completed %s (%s) in %.1fs", project.name, status, result.duration)
        return result

    def _unlock_quietly(self, project_name: str) -> None:
        try:
            self._store.unlock(remove_all=True)
        except StoreNotFound:
            raise
        except StoreError as exc:
            LOG.warning("[%s] failed to clear repository locks: %s", project_name, exc)

    @staticmethod
    def _result(
        project: ProjectConfig,
        status: str,
        started_at: datetime,
        paths: Sequence[Path] = (),
        missing: Sequence[Path] = (),
        errors: Sequence[str] = (),
    ) -> ProjectResult:
        return ProjectResult(
            project=project.name,
            status=status,
            started_at=started_at,
            completed_at=utcnow(),
            paths=list(paths),
            missing=list(missing),
            errors=list(errors),
        )
