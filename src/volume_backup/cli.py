from __future__ import annotations

import argparse
import os
import signal
import sys
from pathlib import Path
from types import FrameType
from typing import List, Optional, Sequence

from .config import BackupConfig, ConfigurationError, load_config
from .logger import configure_logging, get_logger
from .orchestrator import BackupOrchestrator, RunResult
from .store import ResticStore, StoreNotFound

DEFAULT_CONFIG_PATH = "./config.yml"

LOG = get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Snapshot Docker-style volumes into a restic repository.")
    parser.add_argument(
        "--config",
        default=os.getenv("VOLUME_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    parser.add_argument(
        "--project",
        action="append",
        help="Specific project to back up (can be specified multiple times). Runs all projects when omitted.",
    )
    parser.add_argument(
        "--list-projects",
        action="store_true",
        help="List projects defined in the configuration and exit.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL"),
        help="Log level (defaults to the configuration's logging.level, then INFO).",
    )
    parser.add_argument(
        "--restic",
        nargs=argparse.REMAINDER,
        metavar="ARGS",
        help="Run restic with the remaining arguments against the configured repository and exit with its status.",
    )
    return parser.parse_args(argv)


def list_projects(config: BackupConfig) -> None:
    for project in config.projects:
        print(f"{project.name}: {', '.join(project.volumes) or '-'}")


def report(run: RunResult) -> None:
    for result in run.projects:
        if result.failed:
            LOG.error("Project %s failed: %s", result.project, "; ".join(result.errors))
        else:
            LOG.info("Project %s %s in %.2fs", result.project, result.status, result.duration)
    if run.fatal_error:
        LOG.error("Run aborted during %s: %s", run.fatal_phase.value if run.fatal_phase else "?", run.fatal_error)
    LOG.info("Backup completed with exit code: %s", run.exit_code)


def run_backup(config: BackupConfig, project_names: Optional[List[str]]) -> int:
    orchestrator = BackupOrchestrator(config=config)
    run = orchestrator.run(project_names)
    report(run)
    return run.exit_code


def run_restic(config: BackupConfig, restic_args: List[str]) -> int:
    if restic_args[:1] == ["--"]:
        restic_args = restic_args[1:]
    store = ResticStore(config.restic, host=config.host)
    try:
        return store.passthrough(restic_args)
    except StoreNotFound as exc:
        LOG.error("%s", exc)
        return 1


def install_signal_handlers() -> None:
    def _handle_signal(signum: int, _frame: Optional[FrameType]) -> None:
        LOG.warning("Received signal %s; aborting run", signum)
        raise SystemExit(1)

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")

    config_path = Path(args.config).expanduser()
    LOG.info("Reading configuration from %s", config_path)
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        return 1

    if not args.log_level:
        configure_logging(config.logging.level)

    if args.list_projects:
        list_projects(config)
        return 0

    if args.restic is not None:
        try:
            return run_restic(config, args.restic)
        except ConfigurationError as exc:
            LOG.error("Configuration error: %s", exc)
            return 1

    install_signal_handlers()
    try:
        return run_backup(config, args.project)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
