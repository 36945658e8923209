"""Command line entry point: ``python -m hostpulse``."""

from __future__ import annotations

import argparse
import dataclasses
import enum
import json
import logging
import os
import sys
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from hostpulse._config import load_config, write_default_config
from hostpulse._errors import ConfigError
from hostpulse._monitor import _HostMonitor
from hostpulse._types import Domain, Snapshot

logger = logging.getLogger("hostpulse.cli")

DEFAULT_LOG_PATH = "logs/hostpulse.log"


def _configure_logging(level: str) -> None:
    log_path = Path(os.environ.get("HOSTPULSE_LOG", DEFAULT_LOG_PATH))
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(log_path, encoding="utf-8")],
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    raise TypeError(f"Cannot serialise {type(value).__name__}")


def snapshots_to_json(snapshots: Mapping[Domain, Snapshot]) -> str:
    document = {domain.value: dataclasses.asdict(snapshot) for domain, snapshot in snapshots.items()}
    return json.dumps(document, indent=2, default=_json_default)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="hostpulse", description="Collect live host telemetry"
    )
    parser.add_argument(
        "--config", default="hostpulse.yaml",
        help="YAML config file; a default one is written if missing (default: hostpulse.yaml)",
    )
    parser.add_argument(
        "--once", action="store_true",
        help="Collect every enabled domain once, print JSON and exit",
    )
    parser.add_argument(
        "--interval", type=float, default=2.0,
        help="Seconds between JSON snapshot dumps when running continuously",
    )
    parser.add_argument(
        "--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    config_path = Path(args.config)
    if not config_path.exists():
        write_default_config(config_path)
        logger.info("Wrote default config to %s", config_path)
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        print(f"hostpulse: {exc}", file=sys.stderr)
        return 2

    if args.once:
        monitor = _HostMonitor(config)
        enabled = [d for d in monitor.scheduler.domains if d in config.enabled_domains]
        monitor.scheduler.run_once(enabled)
        print(snapshots_to_json(monitor.store.read_all()))
        return 0

    monitor = _HostMonitor(config, config_path=config_path)
    monitor.start()
    try:
        while True:
            time.sleep(args.interval)
            print(snapshots_to_json(monitor.store.read_all()), flush=True)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
