"""
Command-line entry point.

Usage:
    python -m signal_guard --once                 # one cycle, JSON report on stdout, logs on stderr
    python -m signal_guard --once --symbol ETH
    python -m signal_guard --interval 5           # refresh every 5 minutes until Ctrl+C
"""

from __future__ import annotations

import argparse
import json
import sys
import time

from loguru import logger

from .data_cache import TTLCache
from .engine import ConsensusEngine, CycleReport
from .logging_config import configure_logging
from .scheduler import RefreshScheduler
from .settings import settings


HEARTBEAT_SECONDS = 15


def print_report(report: CycleReport) -> None:
    print(json.dumps(report.to_dict(), indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="signal-guard",
        description="Multi-source price consensus with guardrail-gated risk plans",
    )
    parser.add_argument("--symbol", default=settings.default_symbol, help="Asset symbol (default: %(default)s)")
    parser.add_argument("--once", action="store_true", help="Run a single cycle, print the report and exit")
    parser.add_argument("--force-refresh", action="store_true", help="Bypass cached snapshots")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.refresh_interval_minutes,
        help="Minutes between cycles (default: %(default)s)",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Log level (default: %(default)s)")
    return parser


def run(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    # --once keeps stdout for the JSON document
    configure_logging(args.log_level, sink=sys.stderr if args.once else None)

    engine = ConsensusEngine.from_settings(cache=TTLCache())

    if args.once:
        report = engine.run_cycle(args.symbol, force_refresh=args.force_refresh)
        print_report(report)
        return 0 if report.status in ("TRADE", "NO_TRADE") else 1

    scheduler = RefreshScheduler(engine, symbol=args.symbol, interval_minutes=args.interval, on_report=print_report)
    scheduler.run_once()
    scheduler.start()
    logger.info("Press Ctrl+C to stop")
    try:
        while True:
            time.sleep(HEARTBEAT_SECONDS)
    except KeyboardInterrupt:
        logger.info("Shutdown requested by user")
        scheduler.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
