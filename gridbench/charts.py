from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from .report import FAILURE_RECOVERY, LATENCY, STARTUP_TIMES
from .summary import TIMING_COLUMNS

LOGGER = logging.getLogger("gridbench.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 200
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

METRIC_LABELS = {
    "recovery_time": "Recovery",
    "detection_time": "Registry detection",
    "total": "Total startup",
    "discovery_time": "Registry check",
    "health_time": "Health check",
    "container_start_time": "Container start",
}

CHART_TITLES = {
    FAILURE_RECOVERY: "Failure Recovery Time by Service",
    STARTUP_TIMES: "Startup Time by Service",
    LATENCY: "Health Endpoint Latency vs Concurrency",
}


def render_family_chart(family: str, df: pd.DataFrame, output_dir: Path) -> Path | None:
    """Render the chart for one report family from its concatenated trial rows."""
    if df.empty:
        LOGGER.warning("No data available for %s chart", family)
        return None

    chart_path = Path(output_dir) / f"{family}.png"
    if family == LATENCY:
        _render_latency_chart(df, chart_path)
    elif family in TIMING_COLUMNS:
        _render_timing_chart(family, df, chart_path)
    else:
        raise ValueError(f"Unknown report family: {family}")

    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def _render_timing_chart(family: str, df: pd.DataFrame, chart_path: Path) -> None:
    """Grouped bars of the mean of each timing metric, error bars across trials."""
    metrics = list(TIMING_COLUMNS[family])
    long_df = df.melt(
        id_vars=["service"], value_vars=metrics, var_name="metric", value_name="seconds"
    )
    long_df["metric"] = long_df["metric"].map(METRIC_LABELS)

    fig, ax = plt.subplots(figsize=(10, 6))
    sns.barplot(
        data=long_df,
        x="service",
        y="seconds",
        hue="metric",
        errorbar=("ci", 95) if df["trial"].nunique() > 1 else None,
        ax=ax,
    )
    ax.set_xlabel("Service", fontweight="semibold")
    ax.set_ylabel("Seconds", fontweight="semibold")
    ax.set_title(CHART_TITLES[family], fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")
    ax.legend(title=None, frameon=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)


def _render_latency_chart(df: pd.DataFrame, chart_path: Path) -> None:
    """Latency distribution per service for each concurrency group."""
    df = df[df["latency_ms"].notna() & (df["latency_ms"] >= 0)]

    fig, ax = plt.subplots(figsize=(12, 6))
    sns.boxplot(
        data=df,
        x="concurrency_group",
        y="latency_ms",
        hue="service",
        ax=ax,
        linewidth=1.2,
        width=0.7,
        fliersize=2,
    )
    ax.set_xlabel("Concurrent requests per endpoint", fontweight="semibold")
    ax.set_ylabel("Latency (ms)", fontweight="semibold")
    ax.set_title(CHART_TITLES[LATENCY], fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, axis="y", linestyle="--")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
