"""Per-service timing procedures for the failure-recovery and startup modes.

Both procedures drive the lifecycle controller and then hand over to the
readiness monitor. They return ``None`` when the service could not be
measured (a lifecycle command failed or readiness timed out); the reason is
logged and no default values are invented for the report.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .lifecycle import LifecycleController, LifecycleResult
from .readiness import ReadinessMonitor, ReadinessResult
from .services import ServiceIdentity

LOGGER = logging.getLogger("gridbench.measurements")


@dataclass(frozen=True)
class FailureRecoveryMeasurement:
    service: str
    recovery_time: float
    detection_time: float

    def as_row(self) -> tuple:
        return (self.service, self.recovery_time, self.detection_time)


@dataclass(frozen=True)
class StartupMeasurement:
    service: str
    total: float
    discovery_time: float
    health_time: float
    discovery_passed: bool
    container_start_time: float

    def as_row(self) -> tuple:
        return (
            self.service,
            self.total,
            self.discovery_time,
            self.health_time,
            self.discovery_passed,
            self.container_start_time,
        )


def measure_failure_recovery(
    identity: ServiceIdentity,
    lifecycle: LifecycleController,
    monitor: ReadinessMonitor,
    settle_seconds: float = 5.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> FailureRecoveryMeasurement | None:
    """Knock the service down to zero replicas and time its way back.

    ``detection_time`` is when the registry reports the service passing
    again, ``recovery_time`` is when both the registry and the health
    endpoint agree.
    """
    if not _succeeded(lifecycle.start(identity), identity):
        return None
    _log_replicas(lifecycle, identity)
    sleep(settle_seconds)

    if not _succeeded(lifecycle.restart_scaled(identity, 0), identity):
        return None

    started_at = clock()
    if not _succeeded(lifecycle.restart_scaled(identity, 1), identity):
        return None

    readiness = monitor.wait(identity, started_at)
    if not _ready(readiness, identity):
        return None

    measurement = FailureRecoveryMeasurement(
        service=identity.name,
        recovery_time=max(readiness.discovery_ready_at, readiness.health_ready_at),
        detection_time=readiness.discovery_ready_at,
    )
    LOGGER.info(
        "%s became usable again in %.2f seconds (registry after %.2f seconds)",
        identity.name,
        measurement.recovery_time,
        measurement.detection_time,
    )
    return measurement


def measure_startup(
    identity: ServiceIdentity,
    lifecycle: LifecycleController,
    monitor: ReadinessMonitor,
    clock: Callable[[], float] = time.monotonic,
) -> StartupMeasurement | None:
    """Start the service from stopped and time each readiness signal."""
    LOGGER.info("Stopping service %s if running", identity.name)
    stopped = lifecycle.stop(identity)
    if not stopped.ok:
        LOGGER.warning("Failed to stop %s before startup measurement; continuing", identity.name)

    started_at = clock()
    if not _succeeded(lifecycle.start(identity), identity):
        return None
    container_start_time = clock() - started_at
    _log_replicas(lifecycle, identity)

    readiness = monitor.wait(identity, started_at)
    if not _ready(readiness, identity):
        return None

    measurement = StartupMeasurement(
        service=identity.name,
        total=readiness.elapsed,
        discovery_time=readiness.discovery_ready_at,
        health_time=readiness.health_ready_at,
        discovery_passed=readiness.discovery_ready,
        container_start_time=container_start_time,
    )
    LOGGER.info(
        "%s started in %.2f seconds (registry checks passed: %s)",
        identity.name,
        measurement.total,
        measurement.discovery_passed,
    )
    return measurement


def _succeeded(result: LifecycleResult, identity: ServiceIdentity) -> bool:
    if result.ok:
        return True
    LOGGER.warning(
        "Skipping %s: %s failed after %.2fs (%s)",
        identity.name,
        result.action,
        result.elapsed,
        result.error or f"exit code {result.returncode}",
    )
    return False


def _ready(readiness: ReadinessResult, identity: ServiceIdentity) -> bool:
    if readiness.ready:
        return True
    LOGGER.warning(
        "Recording %s as failed: not ready after %.2fs (registry: %s, health: %s at %s)",
        identity.name,
        readiness.elapsed,
        readiness.discovery_ready,
        readiness.health_ready,
        identity.health_url,
    )
    return False


def _log_replicas(lifecycle: LifecycleController, identity: ServiceIdentity) -> None:
    replicas = lifecycle.running_replicas(identity)
    if replicas is not None:
        LOGGER.info("%s has %d running container(s)", identity.name, replicas)
