from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict
from datetime import UTC, datetime
import json
import logging
import os
import sys
import uuid

import uvicorn
from fastapi import FastAPI

from intake.api.http_app import build_app
from intake.domain.models import SubmissionStatus
from intake.domain.use_cases.ingest import SOURCE_TUBES
from intake.fanout.mirror import MIRROR_TUBE
from intake.fanout.statistics import load_statistics
from intake.logging_setup import configure_logging
from intake.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from intake.services.bootstrap import RuntimeContainer, build_runtime_container

KNOWN_TUBES = (*SOURCE_TUBES.values(), MIRROR_TUBE)


def _default_port(role: str) -> int:
    if role == "api":
        return 8000
    return 8100


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Student intake runtime entrypoint")
    parser.add_argument("--role", required=True, help="Runtime role")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Validate startup and exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable code reload (dev mode)",
    )
    operator = parser.add_mutually_exclusive_group()
    operator.add_argument(
        "--stats",
        action="store_true",
        help="Print submission, counter and queue statistics as JSON and exit",
    )
    operator.add_argument(
        "--kick",
        metavar="TUBE",
        default=None,
        help="Move buried work items on TUBE back to ready and exit",
    )
    parser.add_argument("--kick-bound", type=int, default=100, help="Upper bound of items moved by --kick")
    return parser.parse_args(argv)


def _build_runtime_app(role: RuntimeRole, run_id: str) -> FastAPI:
    container = build_runtime_container(role)
    return build_app(
        role=role.name,
        run_id=run_id,
        worker_loops=container.worker_loops,
        worker_runtime_settings=container.worker_settings,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )


def create_runtime_app() -> FastAPI:
    role = validate_role(os.getenv("APP_ROLE", "api"))
    configure_logging()
    return _build_runtime_app(role, str(uuid.uuid4()))


async def statistics_report(container: RuntimeContainer) -> dict[str, object]:
    """Record store totals next to cached counters, so drift between them is visible."""
    by_status = {status.value: await container.store.count_submissions(status=status) for status in SubmissionStatus}
    summary = await load_statistics(container.counters, now=datetime.now(UTC))
    queues = [asdict(await container.queue.stats(tube=tube)) for tube in KNOWN_TUBES]
    return {
        "submissions": {"total": await container.store.count_submissions(), **by_status},
        "counters": asdict(summary),
        "queues": queues,
    }


async def _run_operator_command(args: argparse.Namespace, container: RuntimeContainer) -> dict[str, object]:
    if container.on_startup is not None:
        await container.on_startup()
    try:
        if args.kick is not None:
            kicked = await container.queue.kick(tube=args.kick, bound=args.kick_bound)
            return {"tube": args.kick, "kicked": kicked}
        return await statistics_report(container)
    finally:
        if container.on_shutdown is not None:
            await container.on_shutdown()


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        supported = ", ".join(SUPPORTED_ROLES)
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {supported}\n")
        return 2

    if args.kick is not None and args.kick not in KNOWN_TUBES:
        sys.stderr.write(f"ERROR: Unknown tube '{args.kick}'. Known tubes: {', '.join(KNOWN_TUBES)}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    logger.info(
        "runtime initialized",
        extra={"role": role.name, "service": role.name, "run_id": run_id},
    )

    if args.dry_run_startup:
        logger.info(
            "dry-run startup complete",
            extra={"role": role.name, "service": role.name, "run_id": run_id},
        )
        return 0

    if args.stats or args.kick is not None:
        report = asyncio.run(_run_operator_command(args, build_runtime_container(role)))
        sys.stdout.write(json.dumps(report, indent=2, default=str) + "\n")
        return 0

    port = args.port if args.port is not None else _default_port(role.name)
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "intake.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
    else:
        uvicorn.run(_build_runtime_app(role, run_id), host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
