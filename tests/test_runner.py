"""Run orchestrator scenarios: pre-flight, trials, interrupt teardown."""

import collections
import os
import signal
import subprocess
import threading
import time

import pytest
import requests

from conftest import FakeClock, FakeDiscovery, FakeLifecycle, FakeProbe, make_identity
from gridbench.config import HarnessConfig, TrialPlan, default_plan
from gridbench.discovery import RegistryUnavailableError
from gridbench.health import HealthProbe
from gridbench.lifecycle import LifecycleController
from gridbench.load import LoadGenerator
from gridbench.readiness import ReadinessMonitor
from gridbench.report import read_report
from gridbench.runner import RunOrchestrator

SERVICE_NAMES = ("parking", "traffic", "weather")


class RecordingEvent(threading.Event):
    """Cancellation event whose waits return immediately and are recorded."""

    def __init__(self):
        super().__init__()
        self.waits = []

    def wait(self, timeout=None):
        self.waits.append(timeout)
        return self.is_set()


class Harness:
    def __init__(
        self,
        tmp_path,
        mode="failure",
        trials=2,
        cooldown=7.5,
        discovery=None,
        probe=None,
        base_url="http://test",
        stress_levels=(10,),
        lifecycle=None,
        output_dir=None,
    ):
        self.clock = FakeClock()
        self.cancel = RecordingEvent()
        self.discovery = discovery or FakeDiscovery()
        self.probe = probe or FakeProbe()
        self.lifecycle = lifecycle or FakeLifecycle()
        self.services = [make_identity(name, base_url, tmp_path) for name in SERVICE_NAMES]
        self.resolver_calls = 0
        self.config = HarnessConfig(
            services_root=tmp_path / "services",
            output_dir=output_dir or tmp_path / "results",
            settle_seconds=0.0,
            readiness_timeout=10.0,
        )
        self.plan = TrialPlan(mode=mode, trials=trials, cooldown_seconds=cooldown, stress_levels=stress_levels)
        monitor = ReadinessMonitor(
            self.discovery,
            self.probe,
            poll_interval=1.0,
            timeout=10.0,
            clock=self.clock,
            sleep=self.clock.sleep,
            cancel_event=self.cancel,
        )
        self.orchestrator = RunOrchestrator(
            config=self.config,
            plan=self.plan,
            discovery=self.discovery,
            lifecycle=self.lifecycle,
            monitor=monitor,
            load_generator=LoadGenerator(timeout=5.0, cancel_event=self.cancel),
            cancel_event=self.cancel,
            clock=self.clock,
            resolver=self._resolve,
            render_charts=False,
            probe=self.probe,
        )

    def _resolve(self, root, template):
        self.resolver_calls += 1
        return list(self.services)

    @property
    def output_dir(self):
        return self.config.output_dir


def test_registry_unreachable_aborts_before_touching_services(tmp_path):
    harness = Harness(tmp_path, discovery=FakeDiscovery(leader=False))

    with pytest.raises(RegistryUnavailableError):
        harness.orchestrator.run()

    assert harness.resolver_calls == 0
    assert harness.lifecycle.calls == []
    assert not harness.output_dir.exists()


def test_failure_mode_writes_one_report_per_trial(tmp_path):
    harness = Harness(tmp_path, trials=3)

    trials = harness.orchestrator.run()

    assert [trial.index for trial in trials] == [1, 2, 3]
    for trial in trials:
        assert trial.report_path == harness.output_dir / f"failure_recovery_{trial.index}.csv"
        df = read_report(trial.report_path)
        assert sorted(df["service"]) == list(SERVICE_NAMES)
        assert (df["recovery_time"] >= df["detection_time"]).all()
    # Every trial ends by stopping every service.
    assert harness.lifecycle.actions("stop") == list(SERVICE_NAMES) * 3
    # Cooldown between trials only, never after the last one.
    assert harness.cancel.waits.count(7.5) == 2
    assert (harness.output_dir / "failure_recovery_summary.csv").exists()


def test_unhealthy_service_times_out_while_others_are_measured(tmp_path, stub_server):
    for name in ("parking", "traffic"):
        stub_server.route(f"/{name}/health", status=200, body="ok")
    stub_server.route("/weather/health", status=503, body="unavailable")
    harness = Harness(
        tmp_path,
        mode="startup",
        trials=1,
        probe=HealthProbe(timeout=2.0),
        base_url=stub_server.base_url,
    )

    (trial,) = harness.orchestrator.run()

    assert trial.failed == ["weather"]
    df = read_report(trial.report_path)
    assert sorted(df["service"]) == ["parking", "traffic"]
    assert df["discovery_passed"].tolist() == [True, True]
    assert stub_server.hits("/weather/health") == 10


def test_report_failure_aborts_only_that_trial(tmp_path):
    harness = Harness(tmp_path, trials=2)
    (harness.output_dir / "failure_recovery_1.csv").mkdir(parents=True)

    trials = harness.orchestrator.run()

    assert trials[0].aborted
    assert trials[0].report_path is None
    assert not trials[1].aborted
    assert len(read_report(trials[1].report_path)) == 3
    # Services are still torn down after the aborted trial.
    assert harness.lifecycle.actions("stop") == list(SERVICE_NAMES) * 2


def test_interrupt_mid_trial_stops_everything_and_exits(tmp_path):
    harness = Harness(tmp_path, trials=3)
    harness.lifecycle.hooks[("scale=1", "traffic")] = lambda: harness.orchestrator.handle_interrupt(
        signal.SIGINT, None
    )

    with pytest.raises(SystemExit) as excinfo:
        harness.orchestrator.run()

    assert excinfo.value.code == 0
    assert harness.cancel.is_set()
    assert harness.lifecycle.actions("stop") == list(SERVICE_NAMES)
    assert harness.lifecycle.actions("start") == ["parking", "traffic"]
    assert not (harness.output_dir / "failure_recovery_2.csv").exists()


def test_latency_mode_records_every_request(tmp_path, stub_server):
    for name in SERVICE_NAMES:
        stub_server.route(f"/{name}/health", status=200, body="ok")
    harness = Harness(
        tmp_path,
        mode="latency",
        trials=1,
        probe=HealthProbe(timeout=2.0),
        base_url=stub_server.base_url,
        stress_levels=(2, 5),
    )

    (trial,) = harness.orchestrator.run()

    assert harness.lifecycle.actions("start") == list(SERVICE_NAMES)
    df = read_report(trial.report_path)
    assert len(df) == trial.rows == (2 + 5) * 3
    counts = collections.Counter(zip(df["service"], df["concurrency_group"]))
    for name in SERVICE_NAMES:
        assert counts[(name, 2)] == 2
        assert counts[(name, 5)] == 5
    assert df["success"].all()
    summary = read_report(harness.output_dir / "latency_summary.csv")
    assert len(summary) == 6


def _no_docker():
    raise RuntimeError("no docker socket")


class ComposeRunner:
    """Stands in for ``subprocess.run``; records ``(subcommand, service dir)`` pairs."""

    def __init__(self):
        self.calls = []
        self.hooks = {}

    def __call__(self, command, **kwargs):
        self.calls.append((command[-1], os.path.basename(kwargs["cwd"])))
        hook = self.hooks.pop(command[-1], None)
        if hook is not None:
            hook()
        return subprocess.CompletedProcess(command, 0, stdout="", stderr="")

    def stopped(self):
        return [name for action, name in self.calls if action == "down"]


def test_interrupt_during_compose_command_stops_everything(tmp_path):
    runner = ComposeRunner()
    harness = Harness(
        tmp_path,
        trials=3,
        lifecycle=LifecycleController(runner=runner, docker_client_factory=_no_docker),
    )
    runner.hooks["traffic=1"] = lambda: harness.orchestrator.handle_interrupt(signal.SIGINT, None)
    raised = []

    def run():
        try:
            harness.orchestrator.run()
        except BaseException as exc:  # noqa: BLE001
            raised.append(exc)

    worker = threading.Thread(target=run, daemon=True)
    worker.start()
    worker.join(timeout=10.0)

    assert not worker.is_alive()
    (exc,) = raised
    assert isinstance(exc, SystemExit) and exc.code == 0
    # Everything after the interrupted scale-up is the teardown.
    interrupted = runner.calls.index(("traffic=1", "traffic"))
    assert runner.calls[interrupted + 1 :] == [("down", name) for name in SERVICE_NAMES]


def test_interrupt_during_load_abandons_in_flight_requests(tmp_path, stub_server):
    for name in SERVICE_NAMES:
        stub_server.route(f"/{name}/health", status=200, body="ok", delay=5.0)
    runner = ComposeRunner()
    harness = Harness(
        tmp_path,
        mode="latency",
        trials=1,
        base_url=stub_server.base_url,
        lifecycle=LifecycleController(runner=runner, docker_client_factory=_no_docker),
    )
    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    harness.orchestrator.install_signal_handlers()
    timer = threading.Timer(0.5, os.kill, args=(os.getpid(), signal.SIGINT))
    started = time.perf_counter()
    try:
        timer.start()
        with pytest.raises(SystemExit) as excinfo:
            harness.orchestrator.run()
    finally:
        timer.cancel()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    elapsed = time.perf_counter() - started

    assert excinfo.value.code == 0
    assert elapsed < 3.0
    assert runner.stopped() == list(SERVICE_NAMES)
    in_flight = [t for t in threading.enumerate() if t.name.startswith("gridbench-load")]
    assert in_flight
    assert all(thread.daemon for thread in in_flight)


def test_uncreatable_output_dir_aborts_trials_without_crashing(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    harness = Harness(tmp_path, trials=2, cooldown=0.0, output_dir=blocker / "results")

    trials = harness.orchestrator.run()

    assert [trial.aborted for trial in trials] == [True, True]
    assert all(trial.report_path is None for trial in trials)
    assert harness.lifecycle.actions("stop") == list(SERVICE_NAMES) * 2


def test_close_releases_registry_and_health_sessions(tmp_path):
    harness = Harness(tmp_path)

    harness.orchestrator.close()

    assert harness.discovery.closed
    assert harness.probe.closed


def test_orchestrator_from_config_closes_every_session(monkeypatch):
    closed = []
    monkeypatch.setattr(requests.Session, "close", lambda session: closed.append(session))

    orchestrator = RunOrchestrator.from_config(HarnessConfig(), default_plan("failure", {}))
    orchestrator.close()

    assert len(closed) == 2
    assert closed[0] is not closed[1]
