"""Command line entry point.

Usage:
    python -m rollover [options] app.py [-- app args...]

Send SIGHUP to the supervisor for a rolling restart; SIGINT or SIGTERM stop
it together with its workers.
"""

import argparse
import asyncio
import logging
import signal
import sys

from pydantic import ValidationError

from .exceptions import LaunchConfigError, RoleError
from .models import OrchestratorEvent, RolloverOptions, StdioMode
from .orchestrator import Orchestrator, start
from .protocol import DEFAULT_IPC_TIMEOUT_MS, DEFAULT_RECOVER_ATTEMPTS, DEFAULT_RECOVER_TTL_MS

logger = logging.getLogger("rollover")


def parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rollover",
        description="Run an application with zero-downtime restarts",
    )
    parser.add_argument("path", help="Application entry script")
    parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="Arguments passed to the application after the script path",
    )
    parser.add_argument(
        "--command",
        default=sys.executable,
        help="Command used to run the script (default: this interpreter)",
    )
    parser.add_argument(
        "--ipc-timeout-ms",
        type=int,
        default=DEFAULT_IPC_TIMEOUT_MS,
        help=f"Hand-off timeout for recurring workers (default: {DEFAULT_IPC_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--no-recover",
        action="store_true",
        help="Do not restart workers that exit unexpectedly",
    )
    parser.add_argument(
        "--recover-attempts",
        type=int,
        default=DEFAULT_RECOVER_ATTEMPTS,
        help=f"Automatic restarts allowed in a crash loop (default: {DEFAULT_RECOVER_ATTEMPTS})",
    )
    parser.add_argument(
        "--recover-ttl-ms",
        type=int,
        default=DEFAULT_RECOVER_TTL_MS,
        help=(
            "How long a worker must stay active to reset the recovery budget, "
            f"negative to never reset (default: {DEFAULT_RECOVER_TTL_MS})"
        ),
    )
    parser.add_argument(
        "--stdio",
        choices=[mode.value for mode in StdioMode],
        default=StdioMode.INHERIT.value,
        help="Worker stdout/stderr handling (default: inherit)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def build_options(args: argparse.Namespace) -> RolloverOptions:
    """Map command line arguments onto launch options."""
    extra = list(args.args)
    if extra and extra[0] == "--":
        extra = extra[1:]

    return RolloverOptions(
        path=args.path,
        command=args.command,
        args=[args.path, *extra] if extra else None,
        stdio=StdioMode(args.stdio),
        ipc_timeout_ms=args.ipc_timeout_ms,
        recover=not args.no_recover,
        recover_attempts=args.recover_attempts,
        recover_ttl_ms=args.recover_ttl_ms if args.recover_ttl_ms >= 0 else None,
    )


def _log_notifications(orchestrator: Orchestrator) -> None:
    orchestrator.on(
        OrchestratorEvent.ACTIVE,
        lambda worker: logger.info(f"Worker {worker.pid} is serving"),
    )
    orchestrator.on(
        OrchestratorEvent.EXIT,
        lambda worker, code: logger.info(f"Worker {worker.pid} exited with code {code}"),
    )
    orchestrator.on(
        OrchestratorEvent.RECOVER,
        lambda remaining: logger.warning(f"Recovering, {remaining} attempts left"),
    )


async def run(options: RolloverOptions) -> int:
    """Supervise the application until it exits or the supervisor is stopped.

    Returns:
        Exit code for the supervisor process
    """
    exit_codes: list[int] = []
    orchestrator = await start(options, exit_process=exit_codes.append)
    _log_notifications(orchestrator)

    def give_up_if_idle(*_) -> None:
        # Nothing is running and nothing will be started again
        if orchestrator.active is None and not orchestrator.in_flight and not orchestrator.destroyed:
            logger.error("No worker is running and none will be started, exiting")
            exit_codes.append(1)
            orchestrator.destroy()

    orchestrator.on(OrchestratorEvent.RECOVER, give_up_if_idle)
    orchestrator.on(OrchestratorEvent.ERROR, give_up_if_idle)
    if not options.recover:
        orchestrator.on(OrchestratorEvent.EXIT, give_up_if_idle)

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, orchestrator.destroy)
    loop.add_signal_handler(signal.SIGTERM, orchestrator.destroy)
    loop.add_signal_handler(signal.SIGHUP, orchestrator.schedule_restart)

    try:
        await orchestrator.wait_destroyed()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            loop.remove_signal_handler(sig)
        await orchestrator.aclose()

    return exit_codes[0] if exit_codes else 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the command line."""
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    try:
        options = build_options(args)
    except ValidationError as e:
        logger.error(f"Invalid options: {e}")
        return 2

    try:
        return asyncio.run(run(options))
    except (LaunchConfigError, RoleError) as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
