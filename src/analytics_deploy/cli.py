"""Command-line entry point: ``analytics-deploy <verb> [-e ENV] [options]``.

Command results go to stdout (JSON for ``deploy``, ``status``, ``health``,
``backup``, ``update`` and ``restore``); logs go to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Sequence
from typing import Any

from analytics_deploy import __version__
from analytics_deploy.config import load_settings
from analytics_deploy.errors import DeploymentError, DeploymentInProgressError
from analytics_deploy.logging import get_logger, setup_logging
from analytics_deploy.models import DeploymentRequest, Environment, RetryPolicy
from analytics_deploy.orchestrator import DeploymentOrchestrator

log = get_logger("analytics_deploy.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BUSY = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="analytics-deploy",
        description="Deploy and operate the self-hosted analytics stack",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-e",
        "--environment",
        choices=[env.value for env in Environment],
        help="Target environment (default: ANALYTICS_DEPLOY_ENVIRONMENT or production)",
    )

    verbs = parser.add_subparsers(dest="verb", required=True, metavar="VERB")

    deploy = verbs.add_parser("deploy", parents=[common], help="Run the full deployment pipeline")
    deploy.add_argument("--revision", help="Branch, tag or commit (default: configured revision)")

    verbs.add_parser("stop", parents=[common], help="Stop all services")
    verbs.add_parser("start", parents=[common], help="Start all services")
    verbs.add_parser("restart", parents=[common], help="Restart all services")
    verbs.add_parser("status", parents=[common], help="Show service states")

    logs = verbs.add_parser("logs", parents=[common], help="Print service logs")
    logs.add_argument("--tail", type=int, help="Lines per service")
    logs.add_argument("--since", help="Only logs newer than this (e.g. 1h, 2024-01-01T00:00:00)")
    logs.add_argument("--service", action="append", dest="services", help="Service (repeatable)")

    backup = verbs.add_parser("backup", parents=[common], help="Back up all volumes")
    backup.add_argument("--no-prune", action="store_true", help="Keep all old backup sets")

    restore = verbs.add_parser("restore", parents=[common], help="Restore volumes from a backup")
    restore.add_argument("--backup", required=True, help="Backup set name")
    restore.add_argument("--volume", action="append", dest="volumes", help="Volume (repeatable)")

    verbs.add_parser("update", parents=[common], help="Back up, pull images and recreate services")

    health = verbs.add_parser("health", parents=[common], help="Run health verification")
    health.add_argument("--retries", type=int, help="Attempts per retried check")
    health.add_argument("--interval", type=float, help="Seconds between attempts")

    return parser


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


async def _deploy(orchestrator: DeploymentOrchestrator, args: argparse.Namespace) -> int:
    config = orchestrator.config
    request = DeploymentRequest(
        revision=args.revision or config.default_revision,
        environment=config.environment,
    )

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, orchestrator.cancel, config.environment)
            installed.append(sig)
    try:
        run = await orchestrator.deploy(request)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    _emit(run.to_dict())
    return EXIT_OK if run.succeeded else EXIT_FAILED


async def _health(orchestrator: DeploymentOrchestrator, args: argparse.Namespace) -> int:
    config = orchestrator.config
    policy = config.health_policy
    if args.retries is not None or args.interval is not None:
        policy = RetryPolicy(
            max_attempts=args.retries if args.retries is not None else policy.max_attempts,
            interval=args.interval if args.interval is not None else policy.interval,
            per_attempt_timeout=policy.per_attempt_timeout,
        )
    report = await orchestrator.health.verify(config.services, policy)
    _emit(report.to_dict())
    return EXIT_OK if report.passed else EXIT_FAILED


async def _dispatch(orchestrator: DeploymentOrchestrator, args: argparse.Namespace) -> int:
    config = orchestrator.config
    env = config.environment
    controller = orchestrator.controller
    names = config.service_names

    if args.verb == "deploy":
        return await _deploy(orchestrator, args)

    if args.verb == "health":
        return await _health(orchestrator, args)

    if args.verb == "status":
        states = await controller.status()
        _emit({name: state.value for name, state in states.items()})
        return EXIT_OK

    if args.verb == "logs":
        output = await controller.logs(args.services or names, tail=args.tail, since=args.since)
        sys.stdout.write(output)
        return EXIT_OK

    if args.verb == "stop":
        await orchestrator.run_exclusive(env, lambda: controller.stop(names))
        return EXIT_OK

    if args.verb == "start":
        await orchestrator.run_exclusive(env, lambda: controller.start(names))
        return EXIT_OK

    if args.verb == "restart":
        await orchestrator.run_exclusive(env, lambda: controller.restart(names))
        return EXIT_OK

    if args.verb == "backup":
        backup_set, pruned = await orchestrator.backup(env, prune=not args.no_prune)
        _emit({"backup": backup_set.to_dict(), "pruned": pruned})
        return EXIT_OK

    if args.verb == "restore":
        backup_set = await orchestrator.restore(env, args.backup, args.volumes)
        _emit({"restored": backup_set.name, "volumes": args.volumes or backup_set.volumes})
        return EXIT_OK

    if args.verb == "update":
        backup_set = await orchestrator.update(env)
        _emit({"backup": backup_set.to_dict()})
        return EXIT_OK

    raise ValueError(f"unknown verb: {args.verb}")


async def _run(args: argparse.Namespace) -> int:
    settings = load_settings(args.environment)
    setup_logging(settings)
    orchestrator = DeploymentOrchestrator.from_config(settings.deployment_config())

    try:
        return await _dispatch(orchestrator, args)
    except DeploymentInProgressError as exc:
        log.error("environment_busy", verb=args.verb, error=str(exc))
        return EXIT_BUSY
    except DeploymentError as exc:
        log.error("command_failed", verb=args.verb, error_kind=exc.kind, error=str(exc))
        return EXIT_FAILED
    except ValueError as exc:
        log.error("invalid_request", verb=args.verb, error=str(exc))
        return EXIT_FAILED


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(_run(args))


def run() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
