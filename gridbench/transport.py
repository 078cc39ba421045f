"""HTTP GETs bounded by a deadline on the whole exchange.

``requests`` applies ``timeout`` to the connect and to each socket read, so a
peer that trickles bytes can hold a request open indefinitely. The helpers
here stream the body and give up once the total budget is spent.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

CHUNK_SIZE = 1024


class DeadlineExceeded(requests.Timeout):
    """Raised when a GET has not completed within its total deadline."""


@dataclass(frozen=True)
class Fetched:
    status_code: int
    content: bytes

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.content)


def fetch(get: Callable[..., requests.Response], url: str, timeout: float) -> Fetched:
    """GET ``url`` on the calling thread, checking the deadline between chunks.

    A single slow chunk is bounded only by the socket read timeout, so callers
    that need a hard bound run this on a thread they can abandon.
    """
    deadline = time.perf_counter() + timeout
    response = get(url, timeout=timeout, stream=True)
    try:
        chunks = []
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if time.perf_counter() > deadline:
                raise DeadlineExceeded(f"GET {url} exceeded {timeout:.2f}s")
            chunks.append(chunk)
        if time.perf_counter() > deadline:
            raise DeadlineExceeded(f"GET {url} exceeded {timeout:.2f}s")
        return Fetched(status_code=response.status_code, content=b"".join(chunks))
    finally:
        response.close()


def bounded_fetch(get: Callable[..., requests.Response], url: str, timeout: float) -> Fetched:
    """Like :func:`fetch`, but also bounded while connecting and reading headers.

    The exchange runs on a daemon thread; if it outlives ``timeout`` the
    caller gets :class:`DeadlineExceeded` and the thread is left to finish on
    its own.
    """
    outcome: dict[str, Any] = {}
    finished = threading.Event()

    def worker() -> None:
        try:
            outcome["fetched"] = fetch(get, url, timeout)
        except Exception as exc:  # noqa: BLE001
            outcome["error"] = exc
        finally:
            finished.set()

    threading.Thread(target=worker, name="gridbench-fetch", daemon=True).start()
    if not finished.wait(timeout):
        raise DeadlineExceeded(f"GET {url} exceeded {timeout:.2f}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["fetched"]
