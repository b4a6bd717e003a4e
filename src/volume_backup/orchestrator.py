from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from .config import BackupConfig, ProjectConfig
from .liveness import HealthcheckNotifier, LivenessPhase
from .lock import RunLock, RunLockError
from .project_engine import ProjectEngine, ProjectResult, SnapshotStore, utcnow
from .store import ResticStore, StoreError, StoreNotFound
from .volumes import build_volume_resolver

LOG = logging.getLogger(__name__)


class FatalPreconditionError(Exception):
    """Raised when the run cannot continue for any project."""


class RunPhase(str, Enum):
    INIT = "init"
    LOCKING = "locking"
    PREPARING = "preparing"
    PROJECT_LOOP = "project_loop"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class RunResult:
    host: str
    started_at: datetime
    projects: List[ProjectResult] = field(default_factory=list)
    phase: RunPhase = RunPhase.INIT
    fatal_error: Optional[str] = None
    fatal_phase: Optional[RunPhase] = None
    completed_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        if self.fatal_error is not None:
            return False
        return not any(result.failed for result in self.projects)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def mark_fatal(self, message: str) -> None:
        self.fatal_error = message
        self.fatal_phase = self.phase


class BackupOrchestrator:
    """Runs every configured project through the store, one after another, under the host lock."""

    def __init__(
        self,
        config: BackupConfig,
        store: Optional[SnapshotStore] = None,
        notifier: Optional[HealthcheckNotifier] = None,
        run_lock: Optional[RunLock] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._store = store if store is not None else ResticStore(config.restic, host=config.host)
        self._notifier = notifier if notifier is not None else HealthcheckNotifier(config.healthchecks_url)
        self._run_lock = run_lock if run_lock is not None else RunLock(config.lock_dir, config.host)
        self._engine = ProjectEngine(
            store=self._store,
            resolver=build_volume_resolver(config),
            policy=config.retention,
            host=config.host,
            settle_seconds=config.settle_seconds,
            sleep=sleep,
        )

    def run(self, project_names: Optional[Sequence[str]] = None) -> RunResult:
        projects = list(self._select_projects(project_names))
        run = RunResult(host=self._config.host, started_at=utcnow())
        LOG.info("==== Starting backup on %s (%d project(s)) ====", run.host, len(projects))

        run.phase = RunPhase.LOCKING
        try:
            with self._run_lock.hold():
                try:
                    self._execute(run, projects)
                except (KeyboardInterrupt, SystemExit):
                    LOG.error("Backup interrupted during %s", run.phase.value)
                    self._notifier.ping(LivenessPhase.FAILURE)
                    raise
                self._finalize(run)
        except RunLockError as exc:
            LOG.error("%s; exiting", exc)
            run.mark_fatal(str(exc))
            self._finalize(run)
        finally:
            self._notifier.close()
        return run

    def _execute(self, run: RunResult, projects: Iterable[ProjectConfig]) -> None:
        try:
            run.phase = RunPhase.PREPARING
            self._prepare()

            run.phase = RunPhase.PROJECT_LOOP
            for project in projects:
                run.projects.append(self._engine.run(project))
        except StoreNotFound as exc:
            LOG.error("Store unavailable: %s", exc)
            run.mark_fatal(str(exc))
        except FatalPreconditionError as exc:
            LOG.error("%s", exc)
            run.mark_fatal(str(exc))
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error during %s", run.phase.value)
            run.mark_fatal(f"unexpected error: {exc!r}")

    def _prepare(self) -> None:
        self._notifier.ping(LivenessPhase.START)

        binary = self._store.check_binary()
        LOG.info("Using restic at %s", binary)

        try:
            identity = self._store.read_repository_identity()
        except StoreNotFound:
            raise
        except StoreError as exc:
            LOG.warning("Could not read repository identity: %s", exc)
        else:
            LOG.info("Repository identity: %s", identity)

        try:
            self._store.ensure_initialized()
        except StoreNotFound:
            raise
        except StoreError as exc:
            raise FatalPreconditionError(f"Repository initialization failed: {exc}") from exc

        LOG.info("Clearing stale repository locks")
        try:
            self._store.unlock()
        except StoreNotFound:
            raise
        except StoreError as exc:
            LOG.warning("Failed to clear locks, continuing: %s", exc)

    def _finalize(self, run: RunResult) -> None:
        run.phase = RunPhase.FINALIZING
        run.completed_at = utcnow()
        status = "SUCCESS" if run.success else "FAILED"
        LOG.info("==== Backup finished with status: %s ====", status)
        self._notifier.ping(LivenessPhase.SUCCESS if run.success else LivenessPhase.FAILURE)
        run.phase = RunPhase.DONE

    def _select_projects(self, project_names: Optional[Sequence[str]]) -> Iterable[ProjectConfig]:
        if project_names:
            name_set = {self._config.project(name).name for name in project_names}
            for project in self._config.projects:
                if project.name in name_set:
                    yield project
        else:
            yield from self._config.projects

