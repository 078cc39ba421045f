"""Pytest configuration and shared fixtures for the gridbench test suite."""

import collections
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from gridbench.lifecycle import LifecycleResult
from gridbench.services import ServiceIdentity


@dataclass
class Route:
    status: int = 200
    body: str = ""
    delay: float = 0.0
    trickle: float = 0.0


class _StubHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        server = self.server
        with server.lock:
            server.hits[self.path] += 1
            route = server.routes.get(self.path, Route(status=404, body="not found"))
        if route.delay:
            time.sleep(route.delay)
        payload = route.body.encode("utf-8")
        try:
            self.send_response(route.status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            if route.trickle:
                # One byte at a time, each after a pause shorter than any read timeout.
                for index in range(len(payload)):
                    self.wfile.write(payload[index : index + 1])
                    self.wfile.flush()
                    time.sleep(route.trickle)
            else:
                self.wfile.write(payload)
        except (BrokenPipeError, ConnectionResetError):
            pass

    def log_message(self, format, *args) -> None:  # noqa: A002
        pass


class _StubHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    request_queue_size = 256


class StubServer:
    """Local HTTP server with per-path canned responses."""

    def __init__(self, server: _StubHTTPServer) -> None:
        self._server = server

    @property
    def base_url(self) -> str:
        host, port = self._server.server_address[:2]
        return f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def route(
        self,
        path: str,
        status: int = 200,
        body: str = "",
        delay: float = 0.0,
        trickle: float = 0.0,
    ) -> str:
        with self._server.lock:
            self._server.routes[path] = Route(
                status=status, body=body, delay=delay, trickle=trickle
            )
        return self.url(path)

    def hits(self, path: str) -> int:
        with self._server.lock:
            return self._server.hits[path]


@pytest.fixture(autouse=True)
def no_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep requests to the stub server off any configured proxy."""
    for key in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("NO_PROXY", "127.0.0.1,localhost")


@pytest.fixture
def stub_server():
    server = _StubHTTPServer(("127.0.0.1", 0), _StubHandler)
    server.lock = threading.Lock()
    server.routes = {}
    server.hits = collections.Counter()
    thread = threading.Thread(target=server.serve_forever, name="stub-http", daemon=True)
    thread.start()
    try:
        yield StubServer(server)
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5.0)


class FakeClock:
    """Virtual monotonic clock; ``sleep`` advances time instantly."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


class FakeDiscovery:
    """Registry double: passes a key once it has been asked ``passes_after`` times."""

    def __init__(
        self,
        leader: bool = True,
        passes_after: Optional[Dict[str, int]] = None,
        default_passes_after: Optional[int] = 1,
        base_url: str = "http://registry.test",
    ) -> None:
        self.leader = leader
        self.passes_after = passes_after or {}
        self.default_passes_after = default_passes_after
        self.base_url = base_url
        self.calls: collections.Counter = collections.Counter()
        self.leader_checks = 0
        self.closed = False

    def leader_reachable(self) -> bool:
        self.leader_checks += 1
        return self.leader

    def is_service_healthy(self, key: str) -> bool:
        self.calls[key] += 1
        threshold = self.passes_after.get(key, self.default_passes_after)
        return threshold is not None and self.calls[key] >= threshold

    def close(self) -> None:
        self.closed = True


class FakeProbe:
    """Health probe double keyed by URL, same semantics as :class:`FakeDiscovery`."""

    def __init__(
        self,
        passes_after: Optional[Dict[str, int]] = None,
        default_passes_after: Optional[int] = 1,
    ) -> None:
        self.passes_after = passes_after or {}
        self.default_passes_after = default_passes_after
        self.calls: collections.Counter = collections.Counter()
        self.closed = False

    def is_healthy(self, url: str) -> bool:
        self.calls[url] += 1
        threshold = self.passes_after.get(url, self.default_passes_after)
        return threshold is not None and self.calls[url] >= threshold

    def close(self) -> None:
        self.closed = True


class FakeLifecycle:
    """Records lifecycle calls; actions listed in ``failing`` return a failed result."""

    def __init__(self, failing: Optional[Dict[str, set]] = None) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.failing = failing or {}
        self.hooks: Dict[Tuple[str, str], callable] = {}

    def _result(self, action: str, identity: ServiceIdentity) -> LifecycleResult:
        self.calls.append((action, identity.name))
        hook = self.hooks.get((action, identity.name))
        if hook is not None:
            hook()
        if identity.name in self.failing.get(action, set()):
            return LifecycleResult(action=action, service=identity.name, returncode=1, elapsed=0.0)
        return LifecycleResult(action=action, service=identity.name, returncode=0, elapsed=0.0)

    def start(self, identity: ServiceIdentity) -> LifecycleResult:
        return self._result("start", identity)

    def stop(self, identity: ServiceIdentity) -> LifecycleResult:
        return self._result("stop", identity)

    def restart_scaled(self, identity: ServiceIdentity, replicas: int) -> LifecycleResult:
        return self._result(f"scale={replicas}", identity)

    def stop_all(self, identities) -> List[LifecycleResult]:
        return [self.stop(identity) for identity in identities]

    def running_replicas(self, identity: ServiceIdentity) -> Optional[int]:
        return None

    def actions(self, action: str) -> List[str]:
        return [name for recorded, name in self.calls if recorded == action]


def make_identity(name: str, base_url: str = "http://test", root: Path = Path("/srv")) -> ServiceIdentity:
    return ServiceIdentity(
        name=name,
        path=root / name,
        health_url=f"{base_url}/{name}/health",
        discovery_key=name,
        lifecycle_handle=name,
    )
