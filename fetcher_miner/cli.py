from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from typing import Any, Optional

from .config import MinerConfig
from .events import (
    ErrorEvent,
    MiningEvent,
    RegistrationProgressEvent,
    SolutionResultEvent,
    SolutionSubmitEvent,
    StatusEvent,
    Subscription,
)
from .mining.errors import MinerError
from .mining.version import get_version
from .orchestrator import MiningOrchestrator
from .receipts import JournalSummary, ReceiptsJournal
from .wallet import build_wallet, load_wallet_factory

log = logging.getLogger("fetcher_miner.cli")


class FriendlyFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",  # cyan
        logging.INFO: "\033[32m",  # green
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",  # red
        logging.CRITICAL: "\033[41m",  # red background
    }
    RESET = "\033[0m"

    def __init__(self, *, use_color: bool) -> None:
        fmt = "[%(asctime)s] %(level_display)s %(shortname)s | %(message)s"
        super().__init__(fmt=fmt, datefmt="%H:%M:%S")
        self.use_color = use_color and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        record.shortname = record.name.rsplit(".", 1)[-1]
        level_name = record.levelname
        if self.use_color:
            color = self.LEVEL_COLORS.get(record.levelno)
            if color:
                level_name = f"{color}{level_name}{self.RESET}"
        record.level_display = level_name.ljust(8)
        return super().format(record)


def setup_logging(level: int, log_file: Optional[str] = None) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(FriendlyFormatter(use_color=sys.stdout.isatty()))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)
    root.addHandler(handler)
    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s | %(message)s")
        )
        root.addHandler(file_handler)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="fetcher-miner",
        description="Multi-address proof-of-work challenge miner",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("FETCHER_LOG_LEVEL", "INFO").upper(),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity",
    )
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    parser.add_argument(
        "--storage-dir",
        default=None,
        help="Directory holding the receipts journal and fee cache (default: ./storage)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Register addresses and mine until stopped")
    run.add_argument(
        "--wallet",
        required=True,
        help="Python file defining load_wallet() -> Wallet",
    )
    run.add_argument(
        "--password-env",
        default="FETCHER_WALLET_PASSWORD",
        help="Environment variable holding the wallet credential",
    )
    run.add_argument("--api-base", default=None, help="Challenge API base URL")
    run.add_argument("--hash-url", default=None, help="Hash compute service URL")
    run.add_argument(
        "--workers",
        dest="worker_threads",
        type=int,
        default=None,
        help="Addresses mined concurrently per batch",
    )
    run.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Preimages per hash-service call",
    )
    run.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds between challenge polls",
    )
    run.add_argument(
        "--devfee-ratio",
        type=int,
        default=None,
        help="One fee solution per N user solutions (0 disables)",
    )
    run.add_argument(
        "--quiet-events",
        action="store_true",
        help="Do not echo mining events to the console",
    )

    sub.add_parser("history", help="Summarize the receipts journal")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> MinerConfig:
    return MinerConfig.from_env().with_overrides(
        storage_dir=getattr(args, "storage_dir", None),
        api_base=getattr(args, "api_base", None),
        hash_url=getattr(args, "hash_url", None),
        worker_threads=getattr(args, "worker_threads", None),
        batch_size=getattr(args, "batch_size", None),
        poll_interval=getattr(args, "poll_interval", None),
        devfee_ratio=getattr(args, "devfee_ratio", None),
    )


def format_event(event: MiningEvent) -> Optional[str]:
    """Console line for an event, or None for events that are too chatty."""
    if isinstance(event, StatusEvent):
        state = "active" if event.active else "stopped"
        return f"status: {state} (challenge {event.challenge_id or '-'})"
    if isinstance(event, RegistrationProgressEvent):
        return f"registration {event.current}/{event.total}: {event.message}"
    if isinstance(event, SolutionSubmitEvent):
        tag = "[DEV FEE] " if event.is_dev_fee else ""
        return f"{tag}submitting #{event.address_index} nonce={event.nonce}"
    if isinstance(event, SolutionResultEvent):
        tag = "[DEV FEE] " if event.is_dev_fee else ""
        verdict = "accepted" if event.success else "rejected"
        return f"{tag}solution {verdict} for #{event.address_index}: {event.message}"
    if isinstance(event, ErrorEvent):
        return f"error: {event.message}"
    return None


async def print_events(subscription: Subscription) -> None:
    async for event in subscription:
        line = format_event(event)
        if line:
            print(line, flush=True)


async def run_miner(args: argparse.Namespace, config: MinerConfig) -> int:
    credential = os.environ.get(args.password_env, "")
    log.info("fetcher-miner %s", get_version())
    wallet = await build_wallet(load_wallet_factory(args.wallet))
    orchestrator = MiningOrchestrator(config, wallet=wallet)

    printer: Optional[asyncio.Task] = None
    if not args.quiet_events:
        printer = asyncio.create_task(print_events(orchestrator.events.subscribe()))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _set_stop(*_: Any) -> None:
        stop.set()

    for signame in ("SIGINT", "SIGTERM"):
        if hasattr(signal, signame):
            sig = getattr(signal, signame)
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows Proactor loops do not implement add_signal_handler; fall back to sync handler.
                with contextlib.suppress(ValueError, RuntimeError):
                    signal.signal(sig, _set_stop)

    try:
        await orchestrator.start(credential)
        log.info("Miner started. Press Ctrl+C to stop.")
        waiter = asyncio.create_task(stop.wait())
        finished = asyncio.create_task(orchestrator.wait_stopped())
        await asyncio.wait({waiter, finished}, return_when=asyncio.FIRST_COMPLETED)
        waiter.cancel()
    finally:
        await orchestrator.close()
        if printer is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await printer
    return 0


def show_history(config: MinerConfig) -> int:
    summary = JournalSummary.from_journal(ReceiptsJournal(config.storage_dir))
    print(f"Receipts: {summary.total} ({summary.user} user, {summary.fee} fee)")
    print(f"Failed submissions: {summary.errors}")
    for challenge_id, count in sorted(summary.per_challenge.items()):
        print(f"  {challenge_id}: {count}")
    return 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(getattr(logging, args.log_level), args.log_file)

    try:
        config = build_config(args)
        if args.command == "history":
            sys.exit(show_history(config))
        sys.exit(asyncio.run(run_miner(args, config)))
    except MinerError as exc:
        log.error("%s", exc)
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
