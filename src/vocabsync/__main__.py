"""Command line entry point for the learning engine."""
import argparse
import asyncio
import json
import logging
import signal
from typing import List, Optional

from vocabsync.app import LearningEngine
from vocabsync.config import ensure_directories, settings
from vocabsync.logging_config import setup_logging
from vocabsync.monitoring import start_monitoring

logger = logging.getLogger(__name__)


async def run_stats(engine: LearningEngine, args: argparse.Namespace) -> int:
    words = await engine.word_history()
    stats = await engine.flashcard_stats()
    print(f"Words looked up: {len(words)}")
    print(
        f"Flashcards: {stats['total']} total, {stats['mastered']} mastered, "
        f"{stats['learning']} learning, {stats['new']} new"
    )
    print(f"Review queue: {engine.review.counts()}")
    return 0


async def run_sync(engine: LearningEngine, args: argparse.Namespace) -> int:
    email = args.email or settings.sync.email
    password = args.password or settings.sync.password
    if not engine.gateway.is_authenticated:
        if not (email and password):
            logger.error("SUPABASE_EMAIL and SUPABASE_PASSWORD (or --email/--password) are required")
            return 1
        result = await engine.sign_in(email, password)
        if not result.success:
            logger.error("Sign-in failed: %s", result.error)
            return 1
    if not engine.sync_coordinator.enabled:
        await engine.enable_sync()
    states = await engine.sync()
    print(json.dumps(await engine.sync_status(), indent=2))
    if args.counts:
        print(json.dumps(await engine.remote_counts(), indent=2))
    return 0 if all(state.value == "idle" for state in states.values()) else 2


async def run_backup(engine: LearningEngine, args: argparse.Namespace) -> int:
    await engine.flush()
    written = await engine.write_backup()
    if written:
        print(f"Backup written to {engine.backup.path}")
    return 0 if written else 1


async def run_deck(engine: LearningEngine, args: argparse.Namespace) -> int:
    deck = await engine.build_deck(args.size)
    if not deck:
        print("No words are new or due for review")
        return 0
    for card in deck:
        print(f"{card.word}\t{card.context}")
    return 0


async def run_forever(engine: LearningEngine, args: argparse.Namespace) -> int:
    """Keep the engine running until a termination signal arrives."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)
    logger.info("Engine running, press Ctrl+C to stop")
    await stop_event.wait()
    print()  # Print a newline to ensure log messages start on a new line
    logger.info("Received exit signal, shutting down...")
    return 0


COMMANDS = {
    "stats": run_stats,
    "sync": run_sync,
    "backup": run_backup,
    "deck": run_deck,
    "run": run_forever,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vocabsync", description="Vocabulary learning data engine")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("stats", help="Show local learning statistics")

    sync_parser = subparsers.add_parser("sync", help="Sign in and run one sync cycle")
    sync_parser.add_argument("--email", help="Account email (default: SUPABASE_EMAIL)")
    sync_parser.add_argument("--password", help="Account password (default: SUPABASE_PASSWORD)")
    sync_parser.add_argument("--counts", action="store_true", help="Also print remote record counts")

    subparsers.add_parser("backup", help="Write the JSON backup now")

    deck_parser = subparsers.add_parser("deck", help="Print a balanced flashcard deck")
    deck_parser.add_argument("--size", type=int, default=None, help="Deck size (default: FLASHCARD_DECK_SIZE)")

    subparsers.add_parser("run", help="Run the engine until interrupted")
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    """Run one command against a started engine."""
    args = build_parser().parse_args(argv)
    command = COMMANDS[args.command or "stats"]

    engine = LearningEngine()
    await engine.start()
    try:
        return await command(engine, args)
    finally:
        logger.info("Cleaning up...")
        await engine.stop()


def cli() -> None:
    ensure_directories()
    setup_logging("Starting vocabsync ...")
    if settings.monitoring.enabled:
        start_monitoring(settings.monitoring.port)
    try:
        raise SystemExit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")


if __name__ == "__main__":
    cli()
