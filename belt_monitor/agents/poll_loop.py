"""
Poll Loop Agent — one cycle reads each kind's watermark, fetches new events,
filters them through the dedup ledger and notifies in block order.

The watermark moves inside DedupLedger.should_notify, before delivery, so an
undeliverable event is lost rather than retried forever.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from belt_monitor.agents.cursor_store import CursorStore
from belt_monitor.agents.dedup_ledger import DedupLedger
from belt_monitor.errors import UpstreamUnavailable
from belt_monitor.models import DomainEvent, EventKind, Scope, WalletState

log = logging.getLogger(__name__)

# Deployments sort ahead of operations in the same block: an account exists
# before its first UserOperation.
KINDS: tuple[EventKind, ...] = ("deployment", "user_op")
_KIND_ORDER = {kind: i for i, kind in enumerate(KINDS)}


class EventSource(Protocol):
    async def fetch_since(self, kind: EventKind, position: int) -> list[DomainEvent]: ...

    async def fetch_wallet(self, address: str) -> WalletState | None: ...


class EventSink(Protocol):
    async def notify(self, event: DomainEvent, context: WalletState | None = None) -> bool: ...


@dataclass
class CycleResult:
    fetched: int = 0
    notified: int = 0    # passed the dedup check
    delivered: int = 0
    skipped: int = 0     # already seen or stale
    failed: int = 0      # delivery returned False or raised
    aborted: bool = False


class PollLoop:
    def __init__(
        self,
        scope: Scope,
        source: EventSource,
        sink: EventSink,
        cursors: CursorStore,
        ledger: DedupLedger,
        *,
        with_wallet_context: bool = True,
    ) -> None:
        self.scope = scope
        self.source = source
        self.sink = sink
        self.cursors = cursors
        self.ledger = ledger
        self.with_wallet_context = with_wallet_context

    def scope_for(self, kind: EventKind) -> Scope:
        return self.scope.for_kind(kind)

    async def _fetch(self, kind: EventKind) -> list[DomainEvent]:
        since = self.cursors.get_watermark(self.scope_for(kind))
        return await self.source.fetch_since(kind, since)

    async def _context_for(self, event: DomainEvent) -> WalletState | None:
        if not self.with_wallet_context or event.kind != "user_op":
            return None
        return await self.source.fetch_wallet(event.sender)

    async def run_cycle(self) -> CycleResult:
        """Execute exactly one fetch → filter → notify pass."""
        result = CycleResult()

        try:
            batches = await asyncio.gather(*(self._fetch(kind) for kind in KINDS))
        except UpstreamUnavailable as exc:
            log.warning("[%s] Indexer unavailable, retrying next tick: %s", self.scope, exc)
            result.aborted = True
            return result

        events = [event for batch in batches for event in batch]
        events.sort(key=lambda e: (e.position, _KIND_ORDER[e.kind]))
        result.fetched = len(events)

        for event in events:
            if not self.ledger.should_notify(event.id, event.position, self.scope_for(event.kind)):
                result.skipped += 1
                continue

            result.notified += 1
            try:
                context = await self._context_for(event)
                delivered = await self.sink.notify(event, context)
            except Exception as exc:
                # Isolate failures: one event failing does not block the rest of the batch.
                log.error("[%s] Error notifying %s %s: %s", self.scope, event.kind, event.id, exc, exc_info=True)
                delivered = False

            if delivered:
                result.delivered += 1
            else:
                result.failed += 1

        if result.fetched == 0:
            log.info(
                "[%s] No new events since blocks %s",
                self.scope,
                ", ".join(f"{k}={self.cursors.get_watermark(self.scope_for(k))}" for k in KINDS),
            )
        else:
            log.info(
                "[%s] Cycle: %d fetched, %d new, %d delivered, %d failed, %d skipped",
                self.scope, result.fetched, result.notified, result.delivered, result.failed, result.skipped,
            )
        return result


class PeriodicTask:
    """
    Runs an awaited *body* repeatedly, *interval* seconds apart measured from the
    start of each run. Runs never overlap: an overrun delays the next one.
    """

    def __init__(
        self,
        body: Callable[[], Awaitable[object]],
        interval: float,
        *,
        name: str = "periodic",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.body = body
        self.interval = interval
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    async def run_once(self) -> None:
        try:
            await self.body()
        except Exception as exc:
            log.error("%s: cycle failed, resuming next tick: %s", self.name, exc, exc_info=True)

    async def run(self, max_runs: int | None = None) -> None:
        runs = 0
        while max_runs is None or runs < max_runs:
            started = self._clock()
            await self.run_once()
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            await self._sleep(max(0.0, self.interval - (self._clock() - started)))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        """Cancel the running task and wait for it to unwind."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
