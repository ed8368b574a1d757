"""Command line entry point: ``finjobs worker|enqueue|stats|sweep|cleanup``.

Exit codes: 0 on clean shutdown, 1 on configuration or startup errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from finjobs import __version__
from finjobs.core.config import Settings, load_settings
from finjobs.core.errors import ConfigurationError, JobQueueError
from finjobs.core.job_queue.backends import create_backend
from finjobs.core.job_queue.core import JobPriority, create_job, generate_worker_id
from finjobs.core.job_queue.worker import Worker, WorkerExit
from finjobs.core.logging import setup_structured_logging
from finjobs.processors import build_default_registry

logger = logging.getLogger("finjobs")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="finjobs", description="Distributed job workers")
    parser.add_argument("-c", "--config", help="YAML config file (default: $FINJOBS_CONFIG)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Run a worker until SIGTERM/SIGINT")

    enqueue = sub.add_parser("enqueue", help="Submit a job")
    enqueue.add_argument("job_type")
    enqueue.add_argument("--payload", default="{}", help="JSON object")
    enqueue.add_argument("--id", dest="job_id")
    enqueue.add_argument(
        "--priority",
        default="normal",
        help="low|normal|high|critical or an integer",
    )
    enqueue.add_argument("--max-attempts", type=int)
    enqueue.add_argument("--delay", type=float, default=0.0, help="Seconds before first claim")

    sub.add_parser("stats", help="Print queue and worker statistics as JSON")
    sweep = sub.add_parser("sweep", help="Requeue jobs held by stale workers")
    sweep.add_argument("--stale-after", type=float)
    cleanup = sub.add_parser("cleanup", help="Delete old terminal jobs")
    cleanup.add_argument("--days", type=float, default=30)
    return parser


def parse_priority(value: str) -> int:
    try:
        return JobPriority[value.upper()].value
    except KeyError:
        pass
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"Invalid priority: {value}") from e


async def run_worker(config_path: Optional[str], settings: Settings, worker_id: str) -> int:
    while True:
        backend = create_backend(settings)
        registry = build_default_registry(settings)
        worker = Worker(backend, registry, worker_id=worker_id, settings=settings)
        reason = await worker.run()
        if reason != WorkerExit.RESTART:
            return 0
        logger.info(f"Restarting worker {worker_id}")
        settings = load_settings(config_path)


async def run_enqueue(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"--payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigurationError("--payload must be a JSON object")
    job = create_job(
        args.job_type,
        payload,
        job_id=args.job_id,
        priority=parse_priority(args.priority),
        max_attempts=args.max_attempts,
        delay_seconds=args.delay,
    )
    async with create_backend(settings) as backend:
        job = await backend.enqueue(job)
    return job.to_dict()


async def run_stats(settings: Settings) -> Dict[str, Any]:
    async with create_backend(settings) as backend:
        stats = await backend.get_stats()
        workers = await backend.list_workers()
    return {
        "backend": settings.queue.backend,
        "jobs": stats.to_dict(),
        "workers": [
            {**w.to_dict(), "stale": w.is_stale(settings.queue.stale_after)} for w in workers
        ],
    }


async def run_sweep(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    async with create_backend(settings) as backend:
        reclaimed = await backend.requeue_stale_jobs(args.stale_after)
    return {"reclaimed": reclaimed}


async def run_cleanup(args: argparse.Namespace, settings: Settings) -> Dict[str, Any]:
    async with create_backend(settings) as backend:
        deleted = await backend.cleanup_old_jobs(args.days)
    return {"deleted": deleted}


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ConfigurationError as e:
        print(f"finjobs: {e.message}", file=sys.stderr)
        return 1

    worker_id = generate_worker_id()
    log_file = settings.worker.log_file
    if args.command == "worker":
        log_file = (log_file or "logs/worker_{worker_id}.log").format(worker_id=worker_id)
    setup_structured_logging(
        level=settings.worker.log_level,
        json_output=settings.worker.json_logs,
        log_file=log_file if args.command == "worker" else None,
    )

    try:
        if args.command == "worker":
            return asyncio.run(run_worker(args.config, settings, worker_id))
        if args.command == "enqueue":
            _print(asyncio.run(run_enqueue(args, settings)))
        elif args.command == "stats":
            _print(asyncio.run(run_stats(settings)))
        elif args.command == "sweep":
            _print(asyncio.run(run_sweep(args, settings)))
        elif args.command == "cleanup":
            _print(asyncio.run(run_cleanup(args, settings)))
    except JobQueueError as e:
        logger.error(f"{args.command} failed: {e.message}", extra={"extra_fields": e.to_dict()})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
