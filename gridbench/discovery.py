from __future__ import annotations

import logging

import requests

from .transport import bounded_fetch

LOGGER = logging.getLogger("gridbench.discovery")

PASSING = "passing"


class RegistryUnavailableError(Exception):
    """Raised when the discovery registry does not answer the pre-flight check."""


class DiscoveryClient:
    """Read-only view of the registry's leader status and per-service checks."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    def leader_reachable(self) -> bool:
        url = f"{self._base_url}/v1/status/leader"
        try:
            fetched = bounded_fetch(self._session.get, url, self._timeout)
        except requests.RequestException as exc:
            LOGGER.error("Registry leader check at %s failed: %s", url, exc)
            return False
        if fetched.status_code != 200:
            LOGGER.error(
                "Registry leader check at %s returned status %d", url, fetched.status_code
            )
            return False
        LOGGER.info("Successfully connected to registry at %s", self._base_url)
        return True

    def is_service_healthy(self, key: str) -> bool:
        url = f"{self._base_url}/v1/health/checks/{key}"
        try:
            fetched = bounded_fetch(self._session.get, url, self._timeout)
            if fetched.status_code != 200:
                LOGGER.warning(
                    "Unexpected response code from registry for %s (%s): %d",
                    key,
                    url,
                    fetched.status_code,
                )
                return False
            checks = fetched.json()
        except requests.RequestException as exc:
            LOGGER.warning("Error querying registry for %s (%s): %s", key, url, exc)
            return False
        except ValueError as exc:
            LOGGER.warning("Error decoding registry response for %s (%s): %s", key, url, exc)
            return False

        if not isinstance(checks, list):
            LOGGER.warning("Malformed registry response for %s: expected a list", key)
            return False
        if not checks:
            LOGGER.info("No health checks found for %s", key)
            return False

        for check in checks:
            status = check.get("Status") if isinstance(check, dict) else None
            if not isinstance(status, str):
                LOGGER.warning("Invalid status format for %s: %r", key, check)
                return False
            if status != PASSING:
                LOGGER.info("Service %s is not passing: %s", key, status)
                return False

        LOGGER.debug("Service %s is healthy in the registry", key)
        return True

    def close(self) -> None:
        self._session.close()
