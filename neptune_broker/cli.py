"""Command line entry point.

Usage:
    neptune-broker init-db
    neptune-broker preprovision [--loop]
    neptune-broker plans
    neptune-broker claim small cust-1
    neptune-broker lookup NAME
    neptune-broker tag NAME KEY VALUE
    neptune-broker delete NAME
    neptune-broker sweep

Results are printed as JSON on stdout. Broker errors go to stderr with
exit status 1, configuration errors with exit status 2.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from loguru import logger

from neptune_broker.broker import Broker
from neptune_broker.config import BrokerConfig, Mode, load_config
from neptune_broker.exceptions import BrokerError, ConfigurationError
from neptune_broker.logging import LogConfig, setup_logging, teardown_logging
from neptune_broker.types import TeardownReport

EXIT_ERROR = 1
EXIT_CONFIG = 2

_PREPROVISION_COMMANDS = {"preprovision"}


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2))


def _report(report: TeardownReport) -> dict[str, Any]:
    return {
        "name": report.name,
        "record_removed": report.record_removed,
        "steps": [{"step": s.step, "ok": s.ok, "error": s.error} for s in report.steps],
    }


async def _run(args: argparse.Namespace, config: BrokerConfig) -> int:
    async with Broker.create(config) as broker:
        await broker.initialize()

        match args.command:
            case "init-db":
                _emit({"status": "ok"})
            case "plans":
                _emit(broker.plans())
            case "preprovision":
                if args.loop:
                    await broker.run_forever(args.interval)
                else:
                    await broker.run_cycle()
            case "claim":
                lease = await broker.claim(args.plan, args.billing_code)
                _emit(lease.to_dict())
                if lease.partial is not None:
                    print(f"warning: {lease.partial}", file=sys.stderr)
            case "lookup":
                _emit((await broker.lookup(args.name)).to_dict())
            case "tag":
                await broker.tag(args.name, args.key, args.value)
                _emit({"status": "ok"})
            case "delete":
                report = await broker.delete(args.name)
                _emit(_report(report))
                return 0 if report.ok else EXIT_ERROR
            case "sweep":
                reports = await broker.sweep()
                _emit([_report(r) for r in reports])
                return 0 if all(r.ok for r in reports) else EXIT_ERROR
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="neptune-broker",
        description="Broker for a pool of preprovisioned Neptune instances",
    )
    parser.add_argument("--config", type=Path, default=None, help="TOML config file")
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument("--log-file", default=None, help="Also log to this file")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("init-db", help="Create the pool table")
    commands.add_parser("plans", help="List plans")

    preprovision = commands.add_parser("preprovision", help="Top up every plan's pool")
    preprovision.add_argument("--loop", action="store_true", help="Repeat every interval")
    preprovision.add_argument("--interval", type=int, default=None, help="Seconds between cycles")

    claim = commands.add_parser("claim", help="Claim an available instance")
    claim.add_argument("plan")
    claim.add_argument("billing_code")

    lookup = commands.add_parser("lookup", help="Show connection details")
    lookup.add_argument("name")

    tag = commands.add_parser("tag", help="Tag an instance and its cluster")
    tag.add_argument("name")
    tag.add_argument("key")
    tag.add_argument("value")

    delete = commands.add_parser("delete", help="Tear down an instance")
    delete.add_argument("name")

    commands.add_parser("sweep", help="Retry stuck teardowns and revoke orphaned identities")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    handler_ids = setup_logging(LogConfig(level=args.log_level, file=args.log_file))
    mode: Mode = "preprovision" if args.command in _PREPROVISION_COMMANDS else "api"

    try:
        config = load_config(args.config)
        config.validate(mode)
        return asyncio.run(_run(args, config))
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except BrokerError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 0
    finally:
        teardown_logging(handler_ids)


def cli() -> None:
    sys.exit(main())


__all__ = ["build_parser", "cli", "main"]
