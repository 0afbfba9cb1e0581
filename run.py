#!/usr/bin/env python3
"""
Cycle engine - replay recorded tick batches through one strategy instance.

Usage:
    python run.py ticks.jsonl                     # Paper replay
    python run.py ticks.jsonl --set target=15     # Override a parameter
    python run.py ticks.jsonl --mode live         # Live mode (needs credentials and BROKER_CLIENT_FACTORY)
    python run.py ticks.jsonl --catalog           # Print the parameter catalog and exit

Each line of the input file is one JSON array of raw ticks:
    [{"instrument_token": 1, "symbol": "NIFTY24000CE", "last_price": 95.0}, ...]
Lines may instead be {"control": {"scope": "global", "name": "target", "value": 15}}
to exercise the control channel between batches.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from core.config import ConfigurationError, Settings, ensure_startup_ok, settings
from core.events import EventRecorder
from core.logging_utils import get_logger, setup_logging
from core.parameters import ParameterStore
from execution.strategy_runner import build_runner

logger = get_logger(__name__)


def _parse_value(text: str) -> Any:
    """Interpret --set values as JSON where possible (numbers, booleans)."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def parse_overrides(pairs: list[str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Expected name=value, got {pair!r}")
        name, value = pair.split("=", 1)
        overrides[name.strip()] = _parse_value(value.strip())
    return overrides


async def replay(path: Path, overrides: dict[str, Any], config: Settings = settings) -> dict:
    runner = build_runner(config, overrides=overrides)
    recorder = EventRecorder(runner.bus)

    with open(path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("[REPLAY] Line %d skipped: %s", line_no, e)
                continue
            if isinstance(record, dict) and "control" in record:
                await runner.apply_control(record["control"])
                continue
            if isinstance(record, dict):
                record = [record]
            await runner.process(record)

    await runner.settle()
    status = runner.status()
    status["completed_cycles"] = len(recorder.cycles)
    status["total_pnl"] = round(sum(c.realized_pnl for c in recorder.cycles) + runner.controller.engine.state.realized_pnl, 4)
    status["trades"] = len(recorder.trades)
    status["batch_errors"] = len(recorder.errors)
    return status


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="cycle-engine",
        description="Replay tick batches through the option cycle engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("ticks", nargs="?", type=Path, help="JSONL file, one batch per line")
    parser.add_argument("--mode", choices=["paper", "live"], default=None,
                        help="Trading mode (default: TRADING_MODE or paper)")
    parser.add_argument("--set", dest="overrides", action="append", default=[],
                        metavar="NAME=VALUE", help="Override a parameter before the replay")
    parser.add_argument("--catalog", action="store_true", help="Print the parameter catalog as JSON and exit")
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    args = parser.parse_args(argv)

    setup_logging(args.log_level or settings.log_level)

    if args.catalog:
        print(json.dumps(ParameterStore().catalog(), indent=2))
        return 0

    if args.ticks is None:
        parser.error("a tick file is required unless --catalog is given")

    config = settings.model_copy(update={"trading_mode": args.mode}) if args.mode else settings
    try:
        ensure_startup_ok(config)
        overrides = parse_overrides(args.overrides)
        status = asyncio.run(replay(args.ticks, overrides, config))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except ValueError as e:
        print(f"Invalid parameter: {e}", file=sys.stderr)
        return 2

    print(json.dumps(status, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
