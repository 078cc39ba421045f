from __future__ import annotations

import csv
import datetime
import logging
from pathlib import Path
from typing import IO, Any, Sequence

import pandas as pd

LOGGER = logging.getLogger("gridbench.report")

FAILURE_RECOVERY = "failure_recovery"
STARTUP_TIMES = "startup_times"
LATENCY = "latency"

COLUMNS: dict[str, tuple[str, ...]] = {
    FAILURE_RECOVERY: ("service", "recovery_time", "detection_time"),
    STARTUP_TIMES: (
        "service",
        "total",
        "discovery_time",
        "health_time",
        "discovery_passed",
        "container_start_time",
    ),
    LATENCY: ("service", "request_time", "latency_ms", "success", "concurrency_group"),
}


class ReportError(Exception):
    """Raised when a report file cannot be created or written."""


def report_path(output_dir: Path, family: str, trial: int) -> Path:
    if family not in COLUMNS:
        raise ValueError(f"Unknown report family: {family}")
    return Path(output_dir) / f"{family}_{trial}.csv"


def format_field(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc).isoformat(timespec="seconds")
    return str(value)


class ReportWriter:
    """Append-only CSV writer for one trial's measurements."""

    def __init__(self) -> None:
        self._path: Path | None = None
        self._handle: IO[str] | None = None
        self._writer: Any = None
        self._columns: tuple[str, ...] | None = None
        self._rows = 0

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def rows_written(self) -> int:
        return self._rows

    @property
    def is_open(self) -> bool:
        return self._handle is not None

    def open(self, path: Path | str) -> "ReportWriter":
        if self._handle is not None:
            raise ReportError(f"report {self._path} is already open")
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = open(path, "w", encoding="utf-8", newline="")
        except OSError as exc:
            raise ReportError(f"failed to create report {path}: {exc}") from exc
        self._path = path
        self._writer = csv.writer(self._handle)
        self._columns = None
        self._rows = 0
        LOGGER.debug("Opened report %s", path)
        return self

    def write_header(self, columns: Sequence[str]) -> None:
        if self._columns is not None:
            raise ReportError(f"header already written to {self._path}")
        self._write(list(columns))
        self._columns = tuple(columns)

    def write_row(self, fields: Sequence[Any]) -> None:
        if self._columns is not None and len(fields) != len(self._columns):
            raise ReportError(
                f"row has {len(fields)} fields, header has {len(self._columns)}"
            )
        self._write([format_field(value) for value in fields])
        self._rows += 1

    def close(self) -> None:
        handle = self._handle
        if handle is None:
            return
        self._handle = None
        self._writer = None
        try:
            handle.flush()
        except OSError as exc:
            raise ReportError(f"failed to flush report {self._path}: {exc}") from exc
        finally:
            handle.close()
        LOGGER.info("Saved %d row(s) to %s", self._rows, self._path)

    def _write(self, values: list[str]) -> None:
        if self._handle is None:
            raise ReportError("report is not open")
        try:
            self._writer.writerow(values)
        except OSError as exc:
            raise ReportError(f"failed to write to {self._path}: {exc}") from exc

    def __enter__(self) -> "ReportWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def read_report(path: Path | str) -> pd.DataFrame:
    """Load a report written by :class:`ReportWriter` back into a DataFrame."""
    return pd.read_csv(path, keep_default_na=True)
