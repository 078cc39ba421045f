from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd

from .report import FAILURE_RECOVERY, LATENCY, STARTUP_TIMES, read_report

LOGGER = logging.getLogger("gridbench.summary")

TIMING_COLUMNS: dict[str, tuple[str, ...]] = {
    FAILURE_RECOVERY: ("recovery_time", "detection_time"),
    STARTUP_TIMES: ("total", "discovery_time", "health_time", "container_start_time"),
}


def load_trials(paths: Sequence[tuple[int, Path]]) -> pd.DataFrame:
    """Concatenate per-trial reports, tagging each row with its trial index."""
    frames = []
    for trial, path in paths:
        if not Path(path).exists():
            continue
        df = read_report(path)
        df.insert(0, "trial", trial)
        frames.append(df)
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)


def summarise_latency(df: pd.DataFrame) -> pd.DataFrame:
    columns = [
        "service",
        "concurrency_group",
        "requests",
        "success_rate",
        "mean_ms",
        "p50_ms",
        "p95_ms",
        "p99_ms",
    ]
    if df.empty:
        return pd.DataFrame(columns=columns)

    df = df.copy()
    df["success"] = df["success"].astype(str).str.lower() == "true"
    rows = []
    for (service, group), subset in df.groupby(["service", "concurrency_group"], sort=True):
        latencies = subset["latency_ms"].to_numpy(dtype=float)
        p50, p95, p99 = np.percentile(latencies, [50, 95, 99])
        rows.append(
            {
                "service": service,
                "concurrency_group": int(group),
                "requests": len(subset),
                "success_rate": float(subset["success"].mean()),
                "mean_ms": float(latencies.mean()),
                "p50_ms": float(p50),
                "p95_ms": float(p95),
                "p99_ms": float(p99),
            }
        )
    return pd.DataFrame(rows, columns=columns)


def summarise_timings(df: pd.DataFrame, family: str) -> pd.DataFrame:
    metrics = TIMING_COLUMNS[family]
    if df.empty:
        return pd.DataFrame(columns=["service", "trials"])

    grouped = df.groupby("service", sort=True)
    summary = grouped[list(metrics)].agg(["mean", "min", "max"])
    summary.columns = [f"{metric}_{stat}" for metric, stat in summary.columns]
    summary.insert(0, "trials", grouped.size())
    return summary.reset_index()


def write_summary(
    output_dir: Path, family: str, paths: Sequence[tuple[int, Path]]
) -> tuple[Path, pd.DataFrame] | None:
    """Aggregate the trial reports of ``family`` into ``<family>_summary.csv``."""
    df = load_trials(paths)
    if df.empty:
        LOGGER.warning("No %s rows to summarise", family)
        return None

    if family == LATENCY:
        summary = summarise_latency(df)
    else:
        summary = summarise_timings(df, family)

    summary_path = Path(output_dir) / f"{family}_summary.csv"
    summary.to_csv(summary_path, index=False, float_format="%.2f")
    LOGGER.info(
        "Saved %s summary to %s (%d rows from %d trial(s))",
        family,
        summary_path,
        len(summary),
        df["trial"].nunique(),
    )
    return summary_path, df
