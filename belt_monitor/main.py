"""
main.py — Entry point. Starts the polling scheduler loop.

Run with:
    python -m belt_monitor.main
"""
from __future__ import annotations

import asyncio
import logging
import signal

from belt_monitor.agents.cursor_store import CursorStore
from belt_monitor.agents.dedup_ledger import DedupLedger
from belt_monitor.agents.discord_notifier import DiscordNotifier, RateLimiter
from belt_monitor.agents.fetcher import Fetcher
from belt_monitor.agents.poll_loop import PeriodicTask, PollLoop
from belt_monitor.agents.state_store import StateStore, open_state_store
from belt_monitor.config import AppConfig, load_config
from belt_monitor.errors import StateStoreUnavailable
from belt_monitor.models import Scope
from belt_monitor.utils.http_client import close_client
from belt_monitor.utils.logger import setup_logging

log = logging.getLogger(__name__)


def build_poll_loop(config: AppConfig, store: StateStore) -> tuple[PollLoop, DiscordNotifier]:
    """Wire the fetcher, notifier, cursor store and dedup ledger for *config*."""
    cursors = CursorStore(store)
    ledger = DedupLedger(store, cursors, ttl_seconds=config.dedup_ttl_seconds)
    fetcher = Fetcher(
        config.indexer_url,
        batch_size=config.batch_size,
        chain_id=config.chain_id,
        entry_point_version=config.entry_point_version,
    )
    notifier = DiscordNotifier(
        config.discord_webhook_url,
        username=config.webhook_username,
        rate_limiter=RateLimiter(config.webhook_min_interval_seconds),
    )
    scope = Scope(str(config.chain_id), config.entry_point_version)
    return PollLoop(scope, fetcher, notifier, cursors, ledger), notifier


async def run_monitor(config: AppConfig, store: StateStore, stopping: asyncio.Event) -> None:
    """
    Announce startup, poll until *stopping* is set, then announce shutdown.
    The HTTP client and *store* are closed however this exits.
    """
    loop, notifier = build_poll_loop(config, store)
    task = PeriodicTask(loop.run_cycle, config.poll_interval_seconds, name="poll-loop")
    try:
        await notifier.send_startup_message(
            indexer_url=config.indexer_url,
            poll_interval=config.poll_interval_seconds,
            chain_id=config.chain_id,
            durable_state=store.durable,
        )
        task.start()
        await stopping.wait()
        log.info("Shutting down ...")
    finally:
        await task.stop()
        try:
            await notifier.send_shutdown_message()
        finally:
            await close_client()
            store.close()


async def main() -> None:
    setup_logging()

    log.info("Loading configuration …")
    try:
        config = load_config()
    except ValueError as exc:
        log.critical("Configuration error: %s", exc)
        return

    setup_logging(config.log_level)

    try:
        store = open_state_store(config.state_store_url, required=config.state_store_required)
    except StateStoreUnavailable as exc:
        log.critical("State store unavailable: %s", exc)
        return

    if not config.discord_webhook_url:
        log.warning("DISCORD_WEBHOOK_URL is not set — notifications will only be logged.")

    log.info(
        "Belt UserOp Monitor started. Indexer: %s | polling every %ds | batch %d",
        config.indexer_url,
        config.poll_interval_seconds,
        config.batch_size,
    )

    stopping = asyncio.Event()
    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            event_loop.add_signal_handler(sig, stopping.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    await run_monitor(config, store, stopping)


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
