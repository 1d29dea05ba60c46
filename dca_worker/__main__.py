"""Command line entry point: ``python -m dca_worker``."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from .config import load_settings
from .errors import ConfigurationError
from .models import Job, ScheduleParams
from .observability import configure_logging, serve_metrics
from .worker import build_worker


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="dca_worker", description="Scheduled token purchase worker")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML settings file")
    parser.add_argument("--log-level", default="INFO", help="Logging level (default: INFO)")
    sub = parser.add_subparsers(dest="command", required=True)
    run = sub.add_parser("run", help="Poll for due jobs until interrupted")
    run.add_argument("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port")
    sub.add_parser("once", help="Run every currently due job once and exit")
    sub.add_parser("tokens", help="Print the listed tokens as JSON")
    add = sub.add_parser("add-job", help="Create a job from a JSON schedule document")
    add.add_argument("path", type=Path)
    return parser


async def _main(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    worker = build_worker(settings)
    if args.command == "run":
        if args.metrics_port is not None:
            serve_metrics(args.metrics_port)
        await worker.run_forever(settings.poll_interval_seconds)
        return 0
    if args.command == "once":
        await worker.run_once()
        return 1 if worker.dispatcher.failures else 0
    if args.command == "tokens":
        tokens = await worker.tokens.get()
        if not tokens:
            print("No tokens available", file=sys.stderr)
            return 1
        print(json.dumps([token.model_dump(mode="json") for token in tokens], indent=2))
        return 0
    if args.command == "add-job":
        payload = json.loads(args.path.read_text(encoding="utf-8"))
        job = Job(params=ScheduleParams.model_validate(payload))
        worker.jobs.save(job)
        print(job.id)
        return 0
    return 2


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(_main(args))
    except (ConfigurationError, ValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
