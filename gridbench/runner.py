from __future__ import annotations

import contextlib
import datetime
import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from .charts import render_family_chart
from .config import HarnessConfig, TrialPlan
from .discovery import DiscoveryClient, RegistryUnavailableError
from .health import HealthProbe
from .lifecycle import LifecycleController
from .load import LoadEndpoint, LoadGenerator
from .measurements import measure_failure_recovery, measure_startup
from .readiness import ReadinessMonitor
from .report import (
    COLUMNS,
    FAILURE_RECOVERY,
    LATENCY,
    STARTUP_TIMES,
    ReportError,
    ReportWriter,
    report_path,
)
from .services import ServiceIdentity, resolve_services
from .summary import write_summary

LOGGER = logging.getLogger("gridbench.runner")

REPORT_FAMILIES = {
    "failure": FAILURE_RECOVERY,
    "startup": STARTUP_TIMES,
    "latency": LATENCY,
}


@dataclass
class Trial:
    index: int
    started_at: datetime.datetime
    report_path: Path | None = None
    rows: int = 0
    failed: list[str] = field(default_factory=list)
    aborted: bool = False


class RunOrchestrator:
    """Sequence trials for one benchmark mode and tear services down afterwards."""

    def __init__(
        self,
        config: HarnessConfig,
        plan: TrialPlan,
        discovery: DiscoveryClient,
        lifecycle: LifecycleController,
        monitor: ReadinessMonitor,
        load_generator: LoadGenerator,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        resolver: Callable[[Path, str], list[ServiceIdentity]] = resolve_services,
        render_charts: bool = True,
        probe: HealthProbe | None = None,
    ) -> None:
        self._config = config
        self._plan = plan
        self._discovery = discovery
        self._lifecycle = lifecycle
        self._monitor = monitor
        self._load_generator = load_generator
        self._cancel = cancel_event or threading.Event()
        self._clock = clock
        self._resolver = resolver
        self._render_charts = render_charts
        self._probe = probe
        self._services: list[ServiceIdentity] = []

    @classmethod
    def from_config(cls, config: HarnessConfig, plan: TrialPlan) -> "RunOrchestrator":
        cancel_event = threading.Event()
        discovery = DiscoveryClient(config.registry_url, timeout=config.registry_timeout)
        probe = HealthProbe(timeout=config.probe_timeout)
        monitor = ReadinessMonitor(
            discovery,
            probe,
            poll_interval=config.poll_interval,
            timeout=config.readiness_timeout,
            cancel_event=cancel_event,
        )
        return cls(
            config=config,
            plan=plan,
            discovery=discovery,
            lifecycle=LifecycleController(
                compose_command=config.compose_command,
                timeout=config.lifecycle_timeout,
            ),
            monitor=monitor,
            load_generator=LoadGenerator(
                timeout=config.load_timeout, cancel_event=cancel_event
            ),
            cancel_event=cancel_event,
            probe=probe,
        )

    @property
    def services(self) -> Sequence[ServiceIdentity]:
        return tuple(self._services)

    @property
    def family(self) -> str:
        return REPORT_FAMILIES[self._plan.mode]

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self.handle_interrupt)
        signal.signal(signal.SIGTERM, self.handle_interrupt)

    def handle_interrupt(self, signum, frame) -> None:
        LOGGER.warning(
            "Received %s. Shutting down %d service(s)...",
            signal.Signals(signum).name,
            len(self._services),
        )
        self._cancel.set()
        self._load_generator.stop()
        self._lifecycle.stop_all(self._services)
        raise SystemExit(0)

    def run(self) -> list[Trial]:
        if not self._discovery.leader_reachable():
            raise RegistryUnavailableError(
                f"registry at {self._discovery.base_url} is not reachable"
            )

        self._services = self._resolver(
            self._config.services_root, self._config.health_url_template
        )
        LOGGER.info(
            "Found %d service directories: %s",
            len(self._services),
            ", ".join(identity.name for identity in self._services) or "<none>",
        )

        trials: list[Trial] = []
        for index in range(1, self._plan.trials + 1):
            if self._cancel.is_set():
                break
            LOGGER.info(
                "Running %s iteration %d of %d...", self._plan.mode, index, self._plan.trials
            )
            trials.append(self._run_trial(index))

            if index < self._plan.trials:
                LOGGER.info(
                    "Waiting %.0f seconds before the next run...", self._plan.cooldown_seconds
                )
                if self._cancel.wait(self._plan.cooldown_seconds):
                    break

        self._summarise(trials)
        return trials

    def close(self) -> None:
        self._discovery.close()
        if self._probe is not None:
            self._probe.close()

    def _run_trial(self, index: int) -> Trial:
        trial = Trial(index=index, started_at=datetime.datetime.now(datetime.timezone.utc))
        path = report_path(self._config.output_dir, self.family, index)
        writer = ReportWriter()
        try:
            writer.open(path)
            trial.report_path = path
            writer.write_header(COLUMNS[self.family])
            if self._plan.mode == "latency":
                self._run_load(writer, trial)
            else:
                self._run_timings(writer, trial)
            writer.close()
        except ReportError as exc:
            LOGGER.error("Aborting trial %d: %s", index, exc)
            trial.aborted = True
        finally:
            with contextlib.suppress(ReportError):
                writer.close()
            # The interrupt handler has already stopped everything.
            if not self._cancel.is_set():
                self._lifecycle.stop_all(self._services)

        if trial.aborted and trial.report_path is not None:
            trial.report_path.unlink(missing_ok=True)
            trial.report_path = None
        if trial.failed:
            LOGGER.warning(
                "Trial %d recorded %d failed service(s): %s",
                index,
                len(trial.failed),
                ", ".join(trial.failed),
            )
        return trial

    def _run_timings(self, writer: ReportWriter, trial: Trial) -> None:
        for identity in self._services:
            if self._cancel.is_set():
                return
            LOGGER.info("Testing %s...", identity.name)
            if self._plan.mode == "failure":
                measurement = measure_failure_recovery(
                    identity,
                    self._lifecycle,
                    self._monitor,
                    settle_seconds=self._config.settle_seconds,
                    clock=self._clock,
                    sleep=self._cancel.wait,
                )
            else:
                measurement = measure_startup(
                    identity, self._lifecycle, self._monitor, clock=self._clock
                )
            if measurement is None:
                trial.failed.append(identity.name)
                continue
            writer.write_row(measurement.as_row())
            trial.rows += 1

    def _run_load(self, writer: ReportWriter, trial: Trial) -> None:
        for identity in self._services:
            result = self._lifecycle.start(identity)
            if not result.ok:
                LOGGER.warning("Failed to start %s; its requests will be recorded as failures", identity.name)

        for identity in self._services:
            if self._cancel.is_set():
                return
            readiness = self._monitor.wait(identity)
            if not readiness.ready:
                trial.failed.append(identity.name)

        endpoints = [
            LoadEndpoint(service_name=identity.name, url=identity.health_url)
            for identity in self._services
        ]
        for batch in self._load_generator.run_levels(endpoints, self._plan.stress_levels):
            for result in batch.results:
                writer.write_row(
                    (
                        result.service_name,
                        result.issued_at,
                        result.latency_ms,
                        result.success,
                        result.concurrency_group,
                    )
                )
                trial.rows += 1

    def _summarise(self, trials: Sequence[Trial]) -> None:
        paths = [
            (trial.index, trial.report_path)
            for trial in trials
            if trial.report_path is not None and not trial.aborted
        ]
        if not paths:
            return
        try:
            summary = write_summary(self._config.output_dir, self.family, paths)
            if summary is not None and self._render_charts:
                _, frame = summary
                render_family_chart(self.family, frame, self._config.output_dir)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to summarise %s reports", self.family)
