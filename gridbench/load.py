from __future__ import annotations

import datetime
import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Sequence

import requests

from .transport import fetch

LOGGER = logging.getLogger("gridbench.load")

COLLECT_GRACE = 0.25


@dataclass(frozen=True)
class LoadEndpoint:
    service_name: str
    url: str


@dataclass(frozen=True)
class LoadResult:
    service_name: str
    url: str
    issued_at: datetime.datetime
    latency: float
    success: bool
    status_code: int | None
    concurrency_group: int

    @property
    def latency_ms(self) -> float:
        return self.latency * 1000.0


@dataclass
class LoadStatistics:
    produced: int
    succeeded: int
    started_at: float
    finished_at: float

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def requests_per_second(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.produced / self.duration_s

    @property
    def success_rate(self) -> float:
        if self.produced == 0:
            return 0.0
        return self.succeeded / self.produced


@dataclass
class LoadBatch:
    concurrency: int
    results: list[LoadResult]
    statistics: LoadStatistics


class LoadGenerator:
    """Fan out concurrent GETs per endpoint and collect every one of them.

    A batch at concurrency ``N`` over ``M`` endpoints puts ``N * M`` requests
    in flight at once, one daemon thread each, and always returns ``N * M``
    results: errors and timeouts are recorded as failures with the latency
    observed up to that point. Each request is bounded by ``timeout`` overall;
    one still outstanding after ``timeout + COLLECT_GRACE`` is recorded as a
    failure and its thread abandoned.
    """

    def __init__(
        self,
        timeout: float = 10.0,
        http_get: Callable[..., requests.Response] = requests.get,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self._timeout = timeout
        self._http_get = http_get
        self._cancel_event = cancel_event or threading.Event()

    def run(self, endpoints: Sequence[LoadEndpoint], concurrency: int) -> list[LoadResult]:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        plan = [endpoint for endpoint in endpoints for _ in range(concurrency)]
        if not plan:
            return []

        LOGGER.info(
            "Testing %d endpoint(s) with %d concurrent requests each (%d in flight)",
            len(plan) // concurrency,
            concurrency,
            len(plan),
        )
        completed: queue.Queue = queue.Queue()
        issued = []
        for slot, endpoint in enumerate(plan):
            issued_at = datetime.datetime.now(datetime.timezone.utc)
            start = time.perf_counter()
            issued.append((issued_at, start))
            # Daemon workers are not joined at interpreter exit, so an
            # interrupt abandons whatever is still in flight.
            threading.Thread(
                target=self._issue,
                args=(slot, endpoint, concurrency, issued_at, start, completed),
                name=f"gridbench-load-{slot}",
                daemon=True,
            ).start()

        collected: dict[int, LoadResult] = {}
        results: list[LoadResult] = []
        deadline = time.perf_counter() + self._timeout + COLLECT_GRACE
        while len(results) < len(plan):
            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                break
            try:
                slot, result = completed.get(timeout=remaining)
            except queue.Empty:
                break
            collected[slot] = result
            results.append(result)

        missing = [slot for slot in range(len(plan)) if slot not in collected]
        if missing:
            LOGGER.warning(
                "%d request(s) still outstanding after %.2fs; recording them as failures",
                len(missing),
                self._timeout,
            )
            now = time.perf_counter()
            for slot in missing:
                issued_at, start = issued[slot]
                results.append(
                    _result(plan[slot], concurrency, issued_at, max(now - start, 0.0), False, None)
                )
        return results

    def run_levels(
        self, endpoints: Sequence[LoadEndpoint], levels: Iterable[int]
    ) -> Iterator[LoadBatch]:
        for level in levels:
            if self._cancel_event.is_set():
                LOGGER.info("Load run cancelled before concurrency level %d", level)
                return
            started_at = time.time()
            results = self.run(endpoints, level)
            finished_at = time.time()
            statistics = LoadStatistics(
                produced=len(results),
                succeeded=sum(1 for result in results if result.success),
                started_at=started_at,
                finished_at=finished_at,
            )
            LOGGER.info(
                "Concurrency %d finished: %d/%d succeeded in %.2fs (%.1f req/s)",
                level,
                statistics.succeeded,
                statistics.produced,
                statistics.duration_s,
                statistics.requests_per_second,
            )
            yield LoadBatch(concurrency=level, results=results, statistics=statistics)

    def stop(self) -> None:
        self._cancel_event.set()

    def _issue(
        self,
        slot: int,
        endpoint: LoadEndpoint,
        group: int,
        issued_at: datetime.datetime,
        start: float,
        completed: queue.Queue,
    ) -> None:
        status_code: int | None = None
        success = False
        try:
            fetched = fetch(self._http_get, endpoint.url, self._timeout)
            status_code = fetched.status_code
            success = status_code == 200
            if not success:
                LOGGER.debug("Unexpected status code for %s: %d", endpoint.url, status_code)
        except requests.RequestException as exc:
            LOGGER.debug("Error requesting %s: %s", endpoint.url, exc)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Unexpected error requesting %s", endpoint.url)
        latency = max(time.perf_counter() - start, 0.0)
        completed.put((slot, _result(endpoint, group, issued_at, latency, success, status_code)))


def _result(
    endpoint: LoadEndpoint,
    group: int,
    issued_at: datetime.datetime,
    latency: float,
    success: bool,
    status_code: int | None,
) -> LoadResult:
    return LoadResult(
        service_name=endpoint.service_name,
        url=endpoint.url,
        issued_at=issued_at,
        latency=latency,
        success=success,
        status_code=status_code,
        concurrency_group=group,
    )
