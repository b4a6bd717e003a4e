from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10
DEFAULT_RETRIES = 2


class LivenessPhase(str, Enum):
    START = "start"
    SUCCESS = "success"
    FAILURE = "failure"


PHASE_SUFFIXES = {
    LivenessPhase.START: "/start",
    LivenessPhase.SUCCESS: "",
    LivenessPhase.FAILURE: "/fail",
}


class HealthcheckNotifier:
    """Best-effort run phase pings to a healthchecks-style endpoint.

    ``ping`` never raises for transport problems; without a base URL every
    call is a no-op.
    """

    def __init__(
        self,
        base_url: Optional[str],
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") if base_url else None
        self._timeout = timeout
        self._session = session
        self._retries = retries

    @property
    def enabled(self) -> bool:
        return self._base_url is not None

    def url_for(self, phase: LivenessPhase) -> str:
        if not self._base_url:
            raise ValueError("No healthchecks URL configured")
        return f"{self._base_url}{PHASE_SUFFIXES[phase]}"

    def ping(self, phase: LivenessPhase) -> bool:
        if not self._base_url:
            return False

        url = self.url_for(phase)
        LOG.info("Pinging healthcheck: %s", phase.value)
        try:
            response = self._get_session().get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            LOG.warning("Failed to ping healthcheck %s: %s", phase.value, exc)
            return False

        LOG.debug("Healthcheck %s answered %s", phase.value, response.status_code)
        return True

    def close(self) -> None:
        if self._session is not None:
            self._session.close()

    def _get_session(self) -> requests.Session:
        if self._session is None:
            session = requests.Session()
            retry = Retry(total=self._retries, backoff_factor=1, status_forcelist=(500, 502, 503, 504))
            adapter = HTTPAdapter(max_retries=retry)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            session.headers.update({"User-Agent": "volume-backup"})
            self._session = session
        return self._session
