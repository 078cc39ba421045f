from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import MODES, ConfigError, HarnessConfig, default_plan
from .discovery import RegistryUnavailableError
from .runner import RunOrchestrator
from .services import ServiceResolutionError

LOGGER = logging.getLogger("gridbench")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Service readiness, recovery and load benchmark harness",
        epilog="All tunables are read from GRIDBENCH_* environment variables.",
    )
    parser.add_argument("mode", choices=MODES, help="Benchmark to run")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def configure_file_logging(log_path: Path) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="w", encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger("gridbench").addHandler(handler)
    return handler


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = HarnessConfig.from_env()
    setup_logging(config.log_level)

    try:
        config.validate()
        plan = default_plan(args.mode).validate()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    if config.log_path is not None:
        configure_file_logging(config.log_path)

    LOGGER.info("Services root directory: %s", config.services_root.resolve())
    LOGGER.info("Output directory: %s", config.output_dir.resolve())
    LOGGER.info(
        "Mode %s: %d trial(s), cooldown %.0fs", plan.mode, plan.trials, plan.cooldown_seconds
    )

    orchestrator = RunOrchestrator.from_config(config, plan)
    orchestrator.install_signal_handlers()
    try:
        trials = orchestrator.run()
    except RegistryUnavailableError as exc:
        LOGGER.error("Pre-flight check failed: %s", exc)
        return 1
    except ServiceResolutionError as exc:
        LOGGER.error("Error fetching service directories: %s", exc)
        return 1
    finally:
        orchestrator.close()

    completed = [trial for trial in trials if not trial.aborted]
    LOGGER.info(
        "Testing complete: %d of %d trial(s) written to %s",
        len(completed),
        len(trials),
        config.output_dir,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
