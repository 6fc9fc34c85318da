"""
Revshare operator CLI.

    revshare run                 ingestion + snapshot loops until SIGTERM
    revshare serve               same, plus the HTTP API under uvicorn
    revshare ingest              one ingestion pass
    revshare snapshot            one snapshot cycle
    revshare preview             compute a payout plan without persisting it
    revshare distribute --dry-run
    revshare status
"""

import argparse
import asyncio
import dataclasses
import json
import sys
from typing import Any, Optional, Sequence

from .config import RevshareConfig, get_config
from .errors import RevshareError
from .logging_config import setup_logging
from .service import RevshareEngine, describe_result


def _print_json(payload: Any) -> None:
    if dataclasses.is_dataclass(payload) and not isinstance(payload, type):
        payload = dataclasses.asdict(payload)
    print(json.dumps(payload, indent=2, default=str))


def _engine(config: RevshareConfig) -> RevshareEngine:
    engine = RevshareEngine.from_config(config)
    engine.initialize()
    return engine


async def _one_shot(config: RevshareConfig, action) -> Any:
    engine = _engine(config)
    try:
        return await action(engine)
    finally:
        await engine.close()


def cmd_run(config: RevshareConfig, args) -> None:
    async def _run():
        engine = RevshareEngine.from_config(config)
        await engine.run_forever()

    asyncio.run(_run())


def cmd_serve(config: RevshareConfig, args) -> None:
    import uvicorn

    from .api import create_app

    engine = RevshareEngine.from_config(config)
    uvicorn.run(
        create_app(engine, run_engine=True),
        host=args.host or config.operator.api_host,
        port=args.port or config.operator.api_port,
        log_config=None,
    )


def cmd_ingest(config: RevshareConfig, args) -> None:
    report = asyncio.run(_one_shot(config, lambda e: e.ingestor.run_pass()))
    _print_json(report)


def cmd_snapshot(config: RevshareConfig, args) -> None:
    result = asyncio.run(_one_shot(config, lambda e: e.snapshots.run_cycle()))
    _print_json(result)


def cmd_preview(config: RevshareConfig, args) -> None:
    result = asyncio.run(_one_shot(config, lambda e: e.preview()))
    _print_json(describe_result(result))


def cmd_distribute(config: RevshareConfig, args) -> None:
    if args.dry_run:
        _print_json(asyncio.run(_one_shot(config, lambda e: e.dry_run())))
        return
    outcome = asyncio.run(_one_shot(config, lambda e: e.distribute()))
    _print_json(outcome.to_dict())


def cmd_status(config: RevshareConfig, args) -> None:
    async def _status(engine: RevshareEngine):
        return engine.status()

    _print_json(asyncio.run(_one_shot(config, _status)))


COMMANDS = {
    "run": cmd_run,
    "serve": cmd_serve,
    "ingest": cmd_ingest,
    "snapshot": cmd_snapshot,
    "preview": cmd_preview,
    "distribute": cmd_distribute,
    "status": cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="revshare")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("--no-json-logs", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run")

    serve_parser = subparsers.add_parser("serve")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)

    subparsers.add_parser("ingest")
    subparsers.add_parser("snapshot")
    subparsers.add_parser("preview")

    distribute_parser = subparsers.add_parser("distribute")
    distribute_parser.add_argument("--dry-run", action="store_true")

    subparsers.add_parser("status")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = get_config()
    setup_logging(
        log_dir=config.monitoring.log_dir,
        level=args.log_level or config.monitoring.log_level,
        json_format=config.monitoring.log_json and not args.no_json_logs,
    )

    try:
        COMMANDS[args.command](config, args)
    except RevshareError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
