"""
singleton-process CLI.

Inspect and manage singleton locks, or run a command only while holding one:
    python -m singleton_process.run --backend sqlite --db locks.sqlite status nightly-report
    python -m singleton_process.run --expire 3600 exec nightly-report -- ./report.sh

Exit codes: 0 success, 1 error, 3 lock held elsewhere.
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from .config import load_config
from .errors import SingletonError
from .monitoring import get_logger, setup_logging
from .shutdown import ShutdownCoordinator
from .singleton import Singleton
from .subscribers import LoggingSubscriber, attach

logger = get_logger(__name__)

EXIT_ERROR = 1
EXIT_CONFLICT = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage store-backed singleton locks",
        prog="python -m singleton_process.run"
    )
    parser.add_argument(
        "--config", "-c",
        help="Path to lock config file (YAML or JSON)"
    )
    parser.add_argument(
        "--backend",
        choices=["memory", "sqlite", "file", "firestore"],
        help="Persister backend (default: config, SINGLETON_PERSISTER, or memory)"
    )
    parser.add_argument("--db", help="SQLite database path")
    parser.add_argument("--lock-dir", help="Directory for file locks")
    parser.add_argument("--collection", help="Firestore collection")
    parser.add_argument("--project", help="GCP project ID")
    parser.add_argument(
        "--expire",
        type=int,
        help="Seconds after which a conflicting lock counts as expired"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    commands = parser.add_subparsers(dest="command", required=True)
    for command, help_text in (
        ("status", "Print whether the lock is held"),
        ("acquire", "Take the lock and keep it"),
        ("release", "Delete the lock record, whoever holds it"),
    ):
        sub = commands.add_parser(command, help=help_text)
        sub.add_argument("name", nargs="?", help="Lock name (default: from config)")

    exec_parser = commands.add_parser("exec", help="Run a command while holding the lock")
    exec_parser.add_argument("name", help="Lock name")
    exec_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command to run (after --)")

    return parser


def _singleton_from_args(args: argparse.Namespace, shutdown: Optional[ShutdownCoordinator] = None) -> Singleton:
    config = load_config(
        config_file=args.config,
        name=args.name,
        lock_expire_seconds=args.expire,
        backend=args.backend,
        db_path=args.db,
        lock_dir=args.lock_dir,
        collection=args.collection,
        project=args.project,
    )
    singleton = Singleton.from_config(config, shutdown=shutdown)
    attach(singleton, LoggingSubscriber())
    return singleton


async def _run_command(singleton: Singleton, cmd: List[str], shutdown: ShutdownCoordinator) -> int:
    if not await singleton.acquire():
        return EXIT_CONFLICT

    process = None

    async def stop_child(sig: int) -> None:
        # The lock stays held until the child is gone
        if process is not None and process.returncode is None:
            logger.info(f"Forwarding {signal.Signals(sig).name} to pid {process.pid}")
            process.send_signal(sig)
            await process.wait()

    shutdown.add_hook(stop_child)
    try:
        process = await asyncio.create_subprocess_exec(*cmd)
        return await process.wait()
    finally:
        shutdown.remove_hook(stop_child)
        if shutdown.in_progress:
            await shutdown.wait()
        else:
            await singleton.release()


async def run(args: argparse.Namespace) -> int:
    if args.command == "exec":
        cmd = args.cmd[1:] if args.cmd[:1] == ["--"] else args.cmd
        if not cmd:
            logger.error("No command given to exec")
            return EXIT_ERROR
        shutdown = ShutdownCoordinator()
        shutdown.install_signal_handlers()
        return await _run_command(_singleton_from_args(args, shutdown), cmd, shutdown)

    singleton = _singleton_from_args(args)

    if args.command == "status":
        exists = await singleton.check_exists()
        print("locked" if exists else "unlocked")
        return 0

    if args.command == "acquire":
        return 0 if await singleton.acquire() else EXIT_CONFLICT

    await singleton.release()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        setup_logging(level="DEBUG" if args.verbose else None, force=True)
        return asyncio.run(run(args))
    except FileNotFoundError as e:
        logger.error(str(e))
        return EXIT_ERROR
    except SingletonError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
