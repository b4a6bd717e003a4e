from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from typing import Dict, List, Optional, Sequence

from .config import ConfigurationError, RetentionPolicy, StoreSettings

LOG = logging.getLogger(__name__)

BUSY_MARKERS = ("repository is already locked", "unable to create lock", "failed to lock")
BUSY_EXIT_CODE = 11
STDERR_TAIL_LINES = 5


class StoreError(Exception):
    """Base class for snapshot store failures."""


class StoreNotFound(StoreError):
    """The store binary is missing or not executable."""


class StoreTimeout(StoreError):
    """A store operation exceeded its wall-clock budget and was killed."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"restic {operation} timed out after {timeout:.0f}s")
        self.operation = operation
        self.timeout = timeout


class StoreOperationFailed(StoreError):
    """The store binary exited with a non-zero status."""

    def __init__(self, operation: str, returncode: int, stderr: str = "") -> None:
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"restic {operation} exited with status {returncode}{detail}")
        self.operation = operation
        self.returncode = returncode
        self.stderr = stderr


class StoreBusy(StoreOperationFailed):
    """The repository is locked by another process or a stale run."""


class ResticStore:
    """Runs restic operations against one repository.

    Credentials and repository location are handed to each child process
    through an explicit environment; ``os.environ`` is never modified.
    """

    def __init__(self, settings: StoreSettings, host: str) -> None:
        self._settings = settings
        self._host = host
        self._env = self._build_env(settings)

    @property
    def repository(self) -> str:
        return self._settings.repository

    # Preconditions ---------------------------------------------------------
    def check_binary(self) -> str:
        resolved = shutil.which(self._settings.binary)
        if not resolved:
            raise StoreNotFound(f"restic binary not found: {self._settings.binary}")
        return resolved

    def read_repository_identity(self) -> str:
        output = self._run("cat", ["cat", "config"], self._settings.timeouts.default)
        try:
            return str(json.loads(output)["id"])
        except (ValueError, KeyError, TypeError):
            return output.strip()

    def ensure_initialized(self) -> bool:
        """Initialize the repository unless it already exists; return True when created."""
        try:
            self._run("cat", ["cat", "config"], self._settings.timeouts.default)
            return False
        except StoreNotFound:
            raise
        except StoreError as exc:
            LOG.info("Repository %s not readable (%s); initializing", self.repository, exc)

        self._run("init", ["init"], self._settings.timeouts.default)
        LOG.info("Initialized repository %s", self.repository)
        return True

    # Operations ------------------------------------------------------------
    def unlock(self, remove_all: bool = False) -> None:
        args = ["unlock"]
        if remove_all:
            args.append("--remove-all")
        self._run("unlock", args, self._settings.timeouts.default)

    def backup(self, paths: Sequence[str], tags: Sequence[str]) -> str:
        if not paths:
            raise ValueError("backup requires at least one path")
        args = ["backup", *paths, "--host", self._host]
        for tag in tags:
            args.extend(["--tag", tag])
        if self._settings.limit_upload:
            args.extend(["--limit-upload", str(self._settings.limit_upload)])
        if self._settings.one_file_system:
            args.append("--one-file-system")
        return self._run_contended("backup", args, self._settings.timeouts.backup)

    def forget(self, tags: Sequence[str], policy: RetentionPolicy, prune: bool = False) -> str:
        args = [
            "forget",
            "--tag",
            ",".join(tags),
            "--keep-daily",
            str(policy.keep_daily),
            "--keep-weekly",
            str(policy.keep_weekly),
            "--keep-monthly",
            str(policy.keep_monthly),
        ]
        timeout = self._settings.timeouts.forget
        if prune:
            args.append("--prune")
            timeout += self._settings.timeouts.prune
        return self._run_contended("forget", args, timeout)

    def prune(self) -> str:
        return self._run_contended("prune", ["prune"], self._settings.timeouts.prune)

    def passthrough(self, args: Sequence[str]) -> int:
        """Run an arbitrary restic command against the configured repository.

        Output goes straight to the caller's terminal and no timeout applies;
        this is for operators running ``snapshots``, ``restore`` and the like.
        """
        cmd = [self._settings.binary, *self._global_args(), *args]
        LOG.debug("Running %s", " ".join(cmd))
        try:
            completed = subprocess.run(cmd, env=self._env, check=False)
        except (FileNotFoundError, PermissionError) as exc:
            raise StoreNotFound(f"Cannot execute {self._settings.binary}: {exc}") from exc
        return completed.returncode

    # Internal helpers ------------------------------------------------------
    def _global_args(self) -> List[str]:
        args: List[str] = []
        if self._settings.lock_timeout:
            args.extend(["--retry-lock", f"{self._settings.lock_timeout}s"])
        if self._settings.cache_dir:
            args.extend(["--cache-dir", str(self._settings.cache_dir)])
        return args

    def _run_contended(self, operation: str, args: List[str], timeout: float) -> str:
        """Run an operation that needs the repository lock, clearing stale locks once on contention."""
        try:
            return self._run(operation, args, timeout)
        except StoreBusy as exc:
            LOG.warning("restic %s found the repository locked; clearing stale locks and retrying once", operation)
            try:
                self.unlock()
            except StoreNotFound:
                raise
            except StoreError as unlock_exc:
                LOG.warning("Failed to clear stale locks: %s", unlock_exc)
                raise exc from unlock_exc
        return self._run(operation, args, timeout)

    def _run(self, operation: str, args: List[str], timeout: float) -> str:
        cmd = [self._settings.binary, *self._global_args(), *args]
        LOG.debug("Running %s", " ".join(cmd))
        try:
            completed = subprocess.run(
                cmd,
                env=self._env,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                check=False,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise StoreNotFound(f"Cannot execute {self._settings.binary}: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise StoreTimeout(operation, timeout) from exc

        if completed.returncode != 0:
            stderr = _tail(completed.stderr)
            if completed.returncode == BUSY_EXIT_CODE or _looks_busy(completed.stderr):
                raise StoreBusy(operation, completed.returncode, stderr)
            raise StoreOperationFailed(operation, completed.returncode, stderr)

        for line in _tail(completed.stdout).splitlines():
            LOG.debug("restic %s: %s", operation, line)
        return completed.stdout or ""

    @staticmethod
    def _build_env(settings: StoreSettings) -> Dict[str, str]:
        env = os.environ.copy()
        env["RESTIC_REPOSITORY"] = settings.repository
        env.pop("RESTIC_PASSWORD", None)
        env.pop("RESTIC_PASSWORD_FILE", None)

        if settings.password:
            env["RESTIC_PASSWORD"] = settings.password
        elif settings.password_env:
            value = os.getenv(settings.password_env)
            if not value:
                raise ConfigurationError(f"Environment variable {settings.password_env} is not set.")
            env["RESTIC_PASSWORD"] = value
        elif settings.password_file:
            env["RESTIC_PASSWORD_FILE"] = str(settings.password_file)

        aws = settings.aws
        if aws.access_key_id:
            env["AWS_ACCESS_KEY_ID"] = aws.access_key_id
        if aws.secret_access_key:
            env["AWS_SECRET_ACCESS_KEY"] = aws.secret_access_key
        env["AWS_DEFAULT_REGION"] = aws.region
        if settings.gogc is not None:
            env["GOGC"] = str(settings.gogc)
        return env


def _looks_busy(stderr: Optional[str]) -> bool:
    text = (stderr or "").lower()
    return any(marker in text for marker in BUSY_MARKERS)


def _tail(text: Optional[str], lines: int = STDERR_TAIL_LINES) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])
