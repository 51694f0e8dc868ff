"""Command-line front-ends: ``proton-gate`` and ``proton-git``."""

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

from loguru import logger

from . import __version__
from .agent.supervisor import AgentSupervisor
from .audit import AuditEvent, get_audit_logger
from .config import Config
from .errors import FailureReason, SessionStoreIOError
from .interceptor import EXIT_CANCELLED, EXIT_GATE_FAILED, CommandInterceptor
from .session.gatekeeper import SessionGatekeeper
from .status import collect_status, render_status

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>"
)

EXIT_USAGE = 2


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    """Replace loguru's default sink with stderr plus a rotating file sink."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True, mode=0o700)
            logger.add(
                log_file,
                rotation="10 MB",
                retention="7 days",
                compression="zip",
                level="DEBUG",
            )
        except OSError as e:
            logger.warning(f"File logging disabled: {e}")


def build_components(
    stop_event: Optional[asyncio.Event] = None,
) -> tuple[AgentSupervisor, SessionGatekeeper]:
    supervisor = AgentSupervisor(canonical_path=Config.CANONICAL_SOCKET, stop_event=stop_event)
    gatekeeper = SessionGatekeeper(supervisor, stop_event=supervisor.stop_event)
    return supervisor, gatekeeper


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)


async def _with_stop_event(body: Callable[[asyncio.Event], Awaitable[int]]) -> int:
    stop_event = asyncio.Event()
    _install_stop_handlers(stop_event)
    return await body(stop_event)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------


async def run_daemon(stop_event: asyncio.Event) -> int:
    supervisor, _ = build_components(stop_event)
    await supervisor.run()
    logger.info("Agent supervisor stopped")
    return 0


async def run_status(stop_event: asyncio.Event, as_json: bool = False) -> int:
    supervisor, gatekeeper = build_components(stop_event)
    report = await collect_status(supervisor, gatekeeper)
    if as_json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(render_status(report))
    return 0 if report.live else 1


async def run_lock(stop_event: asyncio.Event) -> int:
    supervisor, gatekeeper = build_components(stop_event)
    await supervisor.force_stop(hold=True)
    try:
        gatekeeper.invalidate()
    except SessionStoreIOError as e:
        print(f"proton-gate: agent stopped but the session could not be cleared: {e.message}", file=sys.stderr)
        return 1
    get_audit_logger().log(AuditEvent.LOCK)
    print("Locked. The next push or signing operation will require unlock.", file=sys.stderr)
    return 0


async def run_unlock(stop_event: asyncio.Event) -> int:
    _, gatekeeper = build_components(stop_event)
    result = await gatekeeper.ensure_fresh(interactive=True)
    get_audit_logger().log(
        AuditEvent.UNLOCK,
        ok=result.ok,
        reason=result.reason,
        key_count=result.key_count,
    )
    if result.ok:
        return 0
    if result.reason is FailureReason.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_GATE_FAILED


async def run_git(stop_event: asyncio.Event, argv: Sequence[str]) -> int:
    _, gatekeeper = build_components(stop_event)
    return await CommandInterceptor(gatekeeper).run(argv)


# ----------------------------------------------------------------------
# Entry points
# ----------------------------------------------------------------------


def _log_level(default: str, verbose: bool = False) -> str:
    if verbose:
        return "DEBUG"
    return str(Config.LOG_LEVEL or default).upper()


def _validated() -> bool:
    try:
        Config.validate()
    except ValueError as e:
        print(f"proton-gate: {e}", file=sys.stderr)
        return False
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proton-gate",
        description="Gate SSH keys and git signing behind a fresh Proton Pass unlock.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("daemon", help="Run the agent supervisor until SIGTERM/SIGINT")
    status_parser = subparsers.add_parser("status", help="Show agent and session state")
    status_parser.add_argument("--json", action="store_true", help="Machine-readable output")
    subparsers.add_parser("lock", help="Stop serving keys and expire the session now")
    subparsers.add_parser("unlock", help="Wait for an unlock and start a fresh session")
    subparsers.add_parser("git", help="Run git through the gate (proton-gate git <args...>)")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``proton-gate``."""
    args_list = list(sys.argv[1:] if argv is None else argv)

    # git arguments are forwarded verbatim, so they bypass argparse
    if args_list[:1] == ["git"]:
        return git_main(args_list[1:])

    args = build_parser().parse_args(args_list)
    configure_logging(
        _log_level("INFO" if args.command == "daemon" else "WARNING", args.verbose),
        Config.LOG_FILE,
    )
    if not _validated():
        return EXIT_USAGE

    if args.command == "daemon":
        return asyncio.run(_with_stop_event(run_daemon))
    if args.command == "status":
        return asyncio.run(_with_stop_event(lambda stop: run_status(stop, args.json)))
    if args.command == "lock":
        return asyncio.run(_with_stop_event(run_lock))
    if args.command == "unlock":
        return asyncio.run(_with_stop_event(run_unlock))
    return EXIT_USAGE


def git_main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``proton-git``: a drop-in for ``git``."""
    git_args = list(sys.argv[1:] if argv is None else argv)
    configure_logging(_log_level("WARNING"), Config.LOG_FILE)
    if not _validated():
        return EXIT_USAGE
    return asyncio.run(_with_stop_event(lambda stop: run_git(stop, git_args)))
