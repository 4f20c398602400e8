"""
Tests for the entry-point wiring.

Run with:  pytest tests/test_main.py
"""
from __future__ import annotations

import asyncio

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from belt_monitor.agents.discord_notifier import DiscordNotifier
from belt_monitor.agents.state_store import MemoryStateStore
from belt_monitor.config import AppConfig
from belt_monitor.main import build_poll_loop, run_monitor


def _config() -> AppConfig:
    return AppConfig(
        indexer_url="https://indexer.example/sql",
        discord_webhook_url="",
        webhook_username="Belt Indexer",
        webhook_min_interval_seconds=2.0,
        state_store_url="memory://",
        state_store_required=False,
        poll_interval_seconds=15,
        batch_size=100,
        dedup_ttl_seconds=600,
        chain_id=369,
        entry_point_version="v0.7",
        log_level="INFO",
    )


class TrackingStore(MemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    def close(self) -> None:
        self.closed = True


def test_build_poll_loop_wires_components():
    loop, notifier = build_poll_loop(_config(), MemoryStateStore())
    assert str(loop.scope) == "369/v0.7"
    assert loop.scope_for("user_op").substream_id == "v0.7:user_op"
    assert loop.ledger.ttl_seconds == 600
    assert loop.source.batch_size == 100
    assert loop.sink is notifier
    assert notifier.rate_limiter.min_interval == 2.0


@pytest.mark.asyncio
async def test_startup_failure_still_closes_client_and_store():
    store = TrackingStore()
    failing_startup = AsyncMock(side_effect=httpx.InvalidURL("bad webhook url"))
    with patch.object(DiscordNotifier, "send_startup_message", new=failing_startup), \
            patch("belt_monitor.main.close_client", new=AsyncMock()) as mock_close:
        with pytest.raises(httpx.InvalidURL):
            await run_monitor(_config(), store, asyncio.Event())
    mock_close.assert_awaited_once()
    assert store.closed is True


@pytest.mark.asyncio
async def test_clean_shutdown_closes_client_and_store():
    store = TrackingStore()
    stopping = asyncio.Event()
    stopping.set()
    with patch("belt_monitor.main.close_client", new=AsyncMock()) as mock_close, \
            patch("belt_monitor.agents.fetcher.post_json", new=AsyncMock(return_value={"data": {}})):
        await run_monitor(_config(), store, stopping)
    mock_close.assert_awaited_once()
    assert store.closed is True
