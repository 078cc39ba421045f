from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from .discovery import DiscoveryClient
from .health import HealthProbe
from .services import ServiceIdentity

LOGGER = logging.getLogger("gridbench.readiness")


class ReadinessState(str, enum.Enum):
    BOTH_READY = "both_ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ReadinessResult:
    """Outcome of one readiness cycle.

    The ``*_ready_at`` values are seconds since the lifecycle command was
    issued and stay ``None`` when that signal never passed.
    """

    service: str
    state: ReadinessState
    discovery_ready: bool
    discovery_ready_at: float | None
    health_ready: bool
    health_ready_at: float | None
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.state is ReadinessState.BOTH_READY


class ReadinessMonitor:
    """Poll the registry and the health endpoint until both pass or time runs out.

    The two signals are tracked as independent flags inside one loop: each
    tick probes whichever signal has not passed yet and stamps the first pass
    relative to ``started_at``. Either signal may flip first.
    """

    def __init__(
        self,
        discovery: DiscoveryClient,
        probe: HealthProbe,
        poll_interval: float = 1.0,
        timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self._discovery = discovery
        self._probe = probe
        self._poll_interval = poll_interval
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep
        self._cancel_event = cancel_event

    def wait(self, identity: ServiceIdentity, started_at: float | None = None) -> ReadinessResult:
        """Block until ``identity`` is dual-ready or the timeout elapses.

        ``started_at`` must come from the same clock the monitor was built
        with; it defaults to the moment the wait begins.
        """
        wait_began = self._clock()
        if started_at is None:
            started_at = wait_began
        deadline = wait_began + self._timeout

        discovery_ready = health_ready = False
        discovery_ready_at: float | None = None
        health_ready_at: float | None = None

        while True:
            self._sleep(self._poll_interval)

            if not discovery_ready:
                discovery_ready = self._discovery.is_service_healthy(identity.discovery_key)
                if discovery_ready:
                    discovery_ready_at = max(self._clock() - started_at, 0.0)
            if not health_ready:
                health_ready = self._probe.is_healthy(identity.health_url)
                if health_ready:
                    health_ready_at = max(self._clock() - started_at, 0.0)

            now = self._clock()
            if discovery_ready and health_ready:
                return ReadinessResult(
                    service=identity.name,
                    state=ReadinessState.BOTH_READY,
                    discovery_ready=True,
                    discovery_ready_at=discovery_ready_at,
                    health_ready=True,
                    health_ready_at=health_ready_at,
                    elapsed=max(now - started_at, 0.0),
                )

            cancelled = self._cancel_event is not None and self._cancel_event.is_set()
            if now >= deadline or cancelled:
                LOGGER.warning(
                    "%s did not become ready within %.0fs (registry: %s, health: %s, url: %s, elapsed: %.2fs)%s",
                    identity.name,
                    self._timeout,
                    discovery_ready,
                    health_ready,
                    identity.health_url,
                    now - started_at,
                    " [cancelled]" if cancelled else "",
                )
                return ReadinessResult(
                    service=identity.name,
                    state=ReadinessState.TIMED_OUT,
                    discovery_ready=discovery_ready,
                    discovery_ready_at=discovery_ready_at,
                    health_ready=health_ready,
                    health_ready_at=health_ready_at,
                    elapsed=max(now - started_at, 0.0),
                )

            LOGGER.info(
                "Waiting for %s to be ready (registry: %s, health: %s, elapsed: %.2fs)",
                identity.name,
                discovery_ready,
                health_ready,
                now - started_at,
            )
