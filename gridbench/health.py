from __future__ import annotations

import logging

import requests

from .transport import bounded_fetch

LOGGER = logging.getLogger("gridbench.health")

BODY_PREVIEW_CHARS = 200


class HealthProbe:
    """Single GET against a service's health endpoint, bounded by ``timeout`` overall."""

    def __init__(self, timeout: float = 0.9, session: requests.Session | None = None) -> None:
        self._timeout = timeout
        self._session = session or requests.Session()

    def is_healthy(self, url: str) -> bool:
        try:
            # The body is read in full so the pooled connection can be reused.
            fetched = bounded_fetch(self._session.get, url, self._timeout)
        except requests.RequestException as exc:
            LOGGER.debug("Error accessing %s: %s", url, exc)
            return False

        LOGGER.debug(
            "Response from %s: status=%d body=%s",
            url,
            fetched.status_code,
            fetched.text[:BODY_PREVIEW_CHARS],
        )
        return fetched.status_code == 200

    def close(self) -> None:
        self._session.close()
