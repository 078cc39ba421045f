from __future__ import annotations

import contextlib
import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import docker

from .services import ServiceIdentity

LOGGER = logging.getLogger("gridbench.lifecycle")

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
OUTPUT_TAIL_CHARS = 2_000


@dataclass(frozen=True)
class LifecycleResult:
    action: str
    service: str
    returncode: int | None
    elapsed: float
    output: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.returncode == 0


class LifecycleController:
    """Run compose commands scoped to each service's directory.

    Commands never raise: a failure is reported through the returned
    :class:`LifecycleResult` so the caller can skip that service and carry on.
    """

    def __init__(
        self,
        compose_command: Sequence[str] = ("docker", "compose"),
        timeout: float = 300.0,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        docker_client_factory: Callable[[], docker.DockerClient] = docker.from_env,
    ) -> None:
        self._compose = list(compose_command)
        self._timeout = timeout
        self._runner = runner
        self._docker_client_factory = docker_client_factory
        self._docker_client: docker.DockerClient | None = None
        # Re-entrant: the interrupt handler runs stop_all on the main thread,
        # which may already hold the lock inside a running command.
        self._lock = threading.RLock()

    def start(self, identity: ServiceIdentity) -> LifecycleResult:
        LOGGER.info("Starting service %s", identity.name)
        return self._invoke("start", identity, ["up", "-d"])

    def stop(self, identity: ServiceIdentity) -> LifecycleResult:
        LOGGER.info("Stopping service in directory %s", identity.path)
        return self._invoke("stop", identity, ["down"])

    def restart_scaled(self, identity: ServiceIdentity, replicas: int) -> LifecycleResult:
        if replicas < 0:
            raise ValueError("replicas must be >= 0")
        LOGGER.info("Scaling service %s to %d replica(s)", identity.name, replicas)
        return self._invoke(
            f"scale={replicas}",
            identity,
            ["up", "-d", "--scale", f"{identity.lifecycle_handle}={replicas}"],
        )

    def stop_all(self, identities: Iterable[ServiceIdentity]) -> list[LifecycleResult]:
        results = []
        for identity in identities:
            result = self.stop(identity)
            if not result.ok:
                LOGGER.warning(
                    "Failed to stop service in %s: %s",
                    identity.path,
                    result.error or f"exit code {result.returncode}",
                )
            results.append(result)
        return results

    def running_replicas(self, identity: ServiceIdentity) -> int | None:
        """Count running containers of the service's compose project."""
        with contextlib.suppress(Exception):
            if self._docker_client is None:
                self._docker_client = self._docker_client_factory()
            containers = self._docker_client.containers.list(
                filters={
                    "label": f"{COMPOSE_PROJECT_LABEL}={identity.name}",
                    "status": "running",
                }
            )
            return len(containers)
        LOGGER.debug("Docker daemon unavailable; cannot count replicas for %s", identity.name)
        return None

    def _invoke(self, action: str, identity: ServiceIdentity, args: list[str]) -> LifecycleResult:
        command = [*self._compose, *args]
        with self._lock:
            started = time.monotonic()
            try:
                completed = self._runner(
                    command,
                    cwd=str(identity.path),
                    capture_output=True,
                    text=True,
                    timeout=self._timeout,
                    check=False,
                )
            except subprocess.TimeoutExpired:
                return self._failed(
                    action,
                    identity,
                    started,
                    f"{' '.join(command)} timed out after {self._timeout:.0f}s",
                )
            except OSError as exc:
                return self._failed(action, identity, started, f"{' '.join(command)}: {exc}")
            elapsed = time.monotonic() - started

        output = ((completed.stdout or "") + (completed.stderr or ""))[-OUTPUT_TAIL_CHARS:]
        result = LifecycleResult(
            action=action,
            service=identity.name,
            returncode=completed.returncode,
            elapsed=elapsed,
            output=output,
        )
        if not result.ok:
            LOGGER.warning(
                "%s for %s exited with %d after %.2fs: %s",
                " ".join(command),
                identity.name,
                completed.returncode,
                elapsed,
                output.strip(),
            )
        return result

    @staticmethod
    def _failed(
        action: str, identity: ServiceIdentity, started: float, error: str
    ) -> LifecycleResult:
        elapsed = time.monotonic() - started
        LOGGER.warning("Lifecycle %s for %s failed after %.2fs: %s", action, identity.name, elapsed, error)
        return LifecycleResult(
            action=action,
            service=identity.name,
            returncode=None,
            elapsed=elapsed,
            error=error,
        )
