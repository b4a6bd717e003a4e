from __future__ import annotations

import logging
from typing import List, Protocol, Sequence

from .config import PruneMode, RetentionPolicy, RetentionScope
from .store import StoreNotFound, StoreError

LOG = logging.getLogger(__name__)


class RetentionStore(Protocol):
    def forget(self, tags: Sequence[str], policy: RetentionPolicy, prune: bool = False) -> str:
        ...

    def prune(self) -> str:
        ...


def retention_tags(project: str, host: str, policy: RetentionPolicy) -> List[str]:
    if policy.scope == RetentionScope.PROJECT_HOST:
        return [project, host]
    return [project]


def apply_retention(store: RetentionStore, project: str, host: str, policy: RetentionPolicy) -> List[str]:
    """Forget and prune snapshots for one project; return the error messages.

    In split mode the prune runs even when forget failed, and each step
    reports its own outcome.
    """
    tags = retention_tags(project, host, policy)
    errors: List[str] = []
    LOG.info(
        "[%s] applying retention (daily=%d weekly=%d monthly=%d) to tags %s",
        project,
        policy.keep_daily,
        policy.keep_weekly,
        policy.keep_monthly,
        ",".join(tags),
    )

    combined = policy.prune == PruneMode.COMBINED
    try:
        store.forget(tags, policy, prune=combined)
    except StoreNotFound:
        raise
    except StoreError as exc:
        LOG.error("[%s] forget failed: %s", project, exc)
        errors.append(f"forget failed: {exc}")
    else:
        LOG.info("[%s] forget completed", project)

    if combined:
        return errors

    try:
        store.prune()
    except StoreNotFound:
        raise
    except StoreError as exc:
        LOG.error("[%s] prune failed: %s", project, exc)
        errors.append(f"prune failed: {exc}")
    else:
        LOG.info("[%s] prune completed", project)
    return errors
