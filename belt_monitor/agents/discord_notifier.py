"""
Discord Notifier Agent — renders domain events as Discord embeds and posts
them to the configured webhook, one at a time and rate limited.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx

from belt_monitor.errors import SinkDeliveryFailed, SinkRateLimited
from belt_monitor.models import (
    ZERO_ADDRESS,
    DeploymentEvent,
    DomainEvent,
    Embed,
    EmbedField,
    OperationEvent,
    WalletState,
)
from belt_monitor.utils.http_client import post, retry_after_seconds

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

COLOR_SUCCESS = 0x00CC66
COLOR_FAILURE = 0xFF3333
COLOR_DEPLOY = 0x5865F2
COLOR_STATUS = 0x2F3136


@dataclass(frozen=True)
class ChainMeta:
    name: str
    explorer: str
    currency: str


CHAINS: dict[int, ChainMeta] = {
    369: ChainMeta("PulseChain", "https://scan.pulsechain.com", "PLS"),
    1: ChainMeta("Ethereum", "https://etherscan.io", "ETH"),
}


def chain_meta(chain_id: int) -> ChainMeta:
    return CHAINS.get(chain_id) or ChainMeta(f"Chain {chain_id}", "https://scan.pulsechain.com", "ETH")


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

def shorten_addr(addr: str) -> str:
    """0x1234567890abcdef… → '0x1234…cdef'; empty or zero address → 'none'."""
    if not addr or addr == ZERO_ADDRESS:
        return "none"
    return f"{addr[:6]}…{addr[-4:]}"


def format_gas(wei: int, currency: str = "PLS") -> str:
    amount = wei / 1e18
    if amount < 0.001:
        return f"{amount * 1e6:.2f} μ{currency}"
    if amount < 1:
        return f"{amount:.6f} {currency}"
    return f"{amount:.4f} {currency}"


def format_timestamp(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def time_since(start_ts: int, now_ts: int) -> str:
    diff = now_ts - start_ts
    if diff < 60:
        return f"{diff}s"
    if diff < 3600:
        return f"{diff // 60}m"
    if diff < 86400:
        return f"{diff // 3600}h"
    return f"{diff // 86400}d"


def _addr_link(addr: str, chain: ChainMeta) -> str:
    return f"[`{shorten_addr(addr)}`]({chain.explorer}/address/{addr})"


def _tx_link(tx_hash: str, chain: ChainMeta) -> str:
    return f"[`{shorten_addr(tx_hash)}`]({chain.explorer}/tx/{tx_hash})"


def _paymaster(addr: str, chain: ChainMeta) -> str:
    return "Self-sponsored" if not addr or addr == ZERO_ADDRESS else _addr_link(addr, chain)


# ---------------------------------------------------------------------------
# Embed builders
# ---------------------------------------------------------------------------

def build_user_op_embed(op: OperationEvent, wallet: WalletState | None = None) -> Embed:
    chain = chain_meta(op.chain_id)
    status = "✅" if op.success else "❌"
    version = op.entry_point_version or "unknown"

    fields = [
        EmbedField("Chain", f"{chain.name} ({op.chain_id})"),
        EmbedField("Sender", _addr_link(op.sender, chain)),
        EmbedField("Paymaster", _paymaster(op.paymaster, chain)),
        EmbedField("Gas Cost", format_gas(op.cost, chain.currency)),
    ]
    if op.tx_hash:
        fields.append(EmbedField("Tx", _tx_link(op.tx_hash, chain)))
    fields.append(EmbedField("Block", str(op.position)))
    fields.append(EmbedField("EntryPoint", version))

    if wallet is not None:
        summary = " • ".join([
            f"**Total Ops:** {wallet.total_user_ops}",
            f"**Total Gas:** {format_gas(wallet.total_gas_spent, chain.currency)}",
            f"**Account Age:** {time_since(wallet.deployed_at, op.timestamp)}",
            f"**Factory:** {shorten_addr(wallet.factory)}",
        ])
        fields.append(EmbedField("📊 Wallet Summary", summary, inline=False))

    return Embed(
        title=f"{status} UserOperation — {chain.name} {version}",
        color=COLOR_SUCCESS if op.success else COLOR_FAILURE,
        fields=tuple(fields),
        timestamp=format_timestamp(op.timestamp),
        footer=f"UserOp {shorten_addr(op.id)} | {chain.name}",
    )


def build_deploy_embed(dep: DeploymentEvent, wallet: WalletState | None = None) -> Embed:
    chain = chain_meta(dep.chain_id)
    version = dep.entry_point_version or "unknown"

    fields = [
        EmbedField("Chain", f"{chain.name} ({dep.chain_id})"),
        EmbedField("Account", f"[`{dep.account}`]({chain.explorer}/address/{dep.account})", inline=False),
        EmbedField("Factory", _addr_link(dep.factory, chain)),
        EmbedField("Paymaster", _paymaster(dep.paymaster, chain)),
        EmbedField("EntryPoint", version),
    ]
    if dep.tx_hash:
        fields.append(EmbedField("Tx", _tx_link(dep.tx_hash, chain)))
    fields.append(EmbedField("Block", str(dep.position)))

    return Embed(
        title=f"🚀 New Account Deployed — {chain.name} {version}",
        description=f"A new Belt smart account has been created on {chain.name}.",
        color=COLOR_DEPLOY,
        fields=tuple(fields),
        timestamp=format_timestamp(dep.timestamp),
        footer=f"Deploy {shorten_addr(dep.id)} | {chain.name}",
    )


_BUILDERS = {
    "user_op": build_user_op_embed,
    "deployment": build_deploy_embed,
}


def render(event: DomainEvent, context: WalletState | None = None) -> Embed:
    """Render *event* (plus optional wallet context) into an embed. Pure and deterministic."""
    return _BUILDERS[event.kind](event, context)


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class RateLimiter:
    """Enforces a minimum spacing between consecutive webhook posts."""

    def __init__(
        self,
        min_interval: float = 2.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_sent: float | None = None

    async def wait(self) -> None:
        if self._last_sent is None:
            return
        remaining = self.min_interval - (self._clock() - self._last_sent)
        if remaining > 0:
            await self._sleep(remaining)

    def mark_sent(self) -> None:
        self._last_sent = self._clock()


class DiscordNotifier:
    def __init__(
        self,
        webhook_url: str,
        *,
        username: str = "Belt Indexer",
        rate_limiter: RateLimiter | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.webhook_url = webhook_url
        self.username = username
        self.rate_limiter = rate_limiter or RateLimiter()
        self._sleep = sleep
        self._lock = asyncio.Lock()

    async def _post_once(self, payload: dict) -> None:
        try:
            response = await post(self.webhook_url, payload)
        except httpx.HTTPError as exc:
            raise SinkDeliveryFailed(f"Webhook request failed: {exc}") from exc
        if response.status_code == 429:
            raise SinkRateLimited(retry_after_seconds(response))
        if not response.is_success:
            raise SinkDeliveryFailed(f"Webhook returned {response.status_code}: {response.text[:200]}")

    async def _deliver(self, payload: dict) -> None:
        """Post *payload*; on 429 wait the requested time and retry exactly once."""
        try:
            await self._post_once(payload)
        except SinkRateLimited as exc:
            log.warning("Discord rate limited, retrying in %.2fs", exc.retry_after)
            await self._sleep(exc.retry_after)
            try:
                await self._post_once(payload)
            except SinkRateLimited as retry_exc:
                raise SinkDeliveryFailed("Still rate limited after retry") from retry_exc

    async def send_embeds(self, embeds: list[Embed]) -> None:
        """
        Deliver *embeds* in one webhook message.

        Raises SinkDeliveryFailed if the message did not go through.
        """
        payload = {"username": self.username, "embeds": [e.to_dict() for e in embeds]}
        async with self._lock:
            await self.rate_limiter.wait()
            try:
                await self._deliver(payload)
            finally:
                self.rate_limiter.mark_sent()

    async def notify(self, event: DomainEvent, context: WalletState | None = None) -> bool:
        """
        Send a Discord message for *event*.

        Returns True on success, False if the send failed (error is logged but not
        raised so that other notifications are not blocked).
        """
        embed = render(event, context)

        if not self.webhook_url:
            log.info("[dry-run] %s", json.dumps(embed.to_dict(), ensure_ascii=False))
            return True

        try:
            await self.send_embeds([embed])
        except SinkDeliveryFailed as exc:
            log.error("Lost notification for %s %s at block %d: %s", event.kind, event.id, event.position, exc)
            return False

        log.info("Discord message sent for %s %s (block %d)", event.kind, event.id, event.position)
        return True

    async def send_status(self, title: str, fields: list[EmbedField] | None = None) -> bool:
        """Post a status embed (startup/shutdown). Failures are logged, never raised."""
        if not self.webhook_url:
            log.info("[dry-run] %s", title)
            return True
        embed = Embed(
            title=title,
            color=COLOR_STATUS,
            fields=tuple(fields or ()),
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            footer="Belt UserOp Monitor",
        )
        try:
            await self.send_embeds([embed])
        except SinkDeliveryFailed as exc:
            log.error("Failed to send status message '%s': %s", title, exc)
            return False
        return True

    async def send_startup_message(
        self,
        *,
        indexer_url: str,
        poll_interval: int,
        chain_id: int,
        durable_state: bool,
    ) -> bool:
        chain = chain_meta(chain_id)
        return await self.send_status(
            "🔍 Belt UserOp Monitor is online",
            [
                EmbedField("Indexer", indexer_url, inline=False),
                EmbedField("Chain", f"{chain.name} ({chain_id})"),
                EmbedField("Poll Interval", f"{poll_interval}s"),
                EmbedField("State", "durable" if durable_state else "volatile"),
            ],
        )

    async def send_shutdown_message(self) -> bool:
        return await self.send_status("🔴 Belt UserOp Monitor is offline")
