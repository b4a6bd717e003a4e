from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from volume_backup.config import BackupConfig, RetentionPolicy
from volume_backup.store import StoreError


class FakeStore:
    """In-memory stand-in for ResticStore that records every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, StoreError] = {}
        self.backup_failures: Dict[str, StoreError] = {}

    def _maybe_fail(self, operation: str) -> None:
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    def check_binary(self) -> str:
        self.calls.append(("check_binary",))
        self._maybe_fail("check_binary")
        return "/usr/bin/restic"

    def read_repository_identity(self) -> str:
        self.calls.append(("identity",))
        self._maybe_fail("identity")
        return "abc123"

    def ensure_initialized(self) -> bool:
        self.calls.append(("ensure_initialized",))
        self._maybe_fail("ensure_initialized")
        return False

    def unlock(self, remove_all: bool = False) -> None:
        self.calls.append(("unlock", remove_all))
        self._maybe_fail("unlock")

    def backup(self, paths: Sequence[str], tags: Sequence[str]) -> str:
        self.calls.append(("backup", list(paths), list(tags)))
        exc = self.backup_failures.get(tags[0])
        if exc is not None:
            raise exc
        self._maybe_fail("backup")
        return ""

    def forget(self, tags: Sequence[str], policy: RetentionPolicy, prune: bool = False) -> str:
        self.calls.append(("forget", list(tags), prune))
        self._maybe_fail("forget")
        return ""

    def prune(self) -> str:
        self.calls.append(("prune",))
        self._maybe_fail("prune")
        return ""

    def operations(self) -> List[str]:
        return [call[0] for call in self.calls]


class RecordingNotifier:
    def __init__(self) -> None:
        self.phases: List[str] = []
        self.closed = False

    def ping(self, phase: Any) -> bool:
        self.phases.append(phase.value)
        return True

    def close(self) -> None:
        self.closed = True


def make_config(tmp_path: Path, projects: Dict[str, List[str]], **overrides: Any) -> BackupConfig:
    raw: Dict[str, Any] = {
        "host": "backup-01",
        "volume_base_path": str(tmp_path / "volumes"),
        "lock_dir": str(tmp_path / "locks"),
        "settle_seconds": 0,
        "restic": {"repository": "s3:https://s3.example.com/bucket/{host}", "password": "secret"},
        "projects": projects,
    }
    raw.update(overrides)
    return BackupConfig.model_validate(raw)


def make_volume(tmp_path: Path, name: str, subpath: Optional[str] = "_data") -> Path:
    path = tmp_path / "volumes" / name
    if subpath:
        path = path / subpath
    path.mkdir(parents=True)
    return path


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


def make_fake_restic(tmp_path: Path, body: str) -> Path:
    """Write an executable shell script that stands in for the restic binary."""
    script = tmp_path / "bin" / "restic"
    script.parent.mkdir(parents=True, exist_ok=True)
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script
