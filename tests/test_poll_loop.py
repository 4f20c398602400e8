"""
Tests for the Poll Loop agent.

Run with:  pytest tests/test_poll_loop.py
"""
from __future__ import annotations

import asyncio

import pytest

from belt_monitor.agents.cursor_store import CursorStore
from belt_monitor.agents.dedup_ledger import DedupLedger
from belt_monitor.agents.poll_loop import PeriodicTask, PollLoop
from belt_monitor.agents.state_store import MemoryStateStore
from belt_monitor.errors import UpstreamUnavailable
from belt_monitor.models import DeploymentEvent, OperationEvent, Scope, WalletState

SCOPE = Scope("369", "v0.7")


def _op(id_: str, position: int) -> OperationEvent:
    return OperationEvent(
        id=id_, position=position, timestamp=1_700_000_000 + position,
        success=True, cost=1, sender="0xsender",
    )


def _deploy(id_: str, position: int) -> DeploymentEvent:
    return DeploymentEvent(
        id=id_, position=position, timestamp=1_700_000_000 + position,
        account="0xaccount", factory="0xfactory",
    )


class FakeSource:
    """Returns canned batches; records the positions it was asked for."""

    def __init__(self, user_ops=None, deployments=None, wallet=None) -> None:
        self.batches = {"user_op": list(user_ops or []), "deployment": list(deployments or [])}
        self.wallet = wallet
        self.calls: list[tuple[str, int]] = []
        self.error: Exception | None = None

    async def fetch_since(self, kind, position):
        self.calls.append((kind, position))
        if self.error is not None:
            raise self.error
        return list(self.batches[kind])

    async def fetch_wallet(self, address):
        return self.wallet


class FakeSink:
    def __init__(self, result=True) -> None:
        self.result = result
        self.sent: list[tuple[str, object]] = []

    async def notify(self, event, context=None):
        self.sent.append((event.id, context))
        if isinstance(self.result, Exception):
            raise self.result
        if callable(self.result):
            return self.result(event)
        return self.result


def _loop(source: FakeSource, sink: FakeSink) -> PollLoop:
    store = MemoryStateStore()
    cursors = CursorStore(store)
    return PollLoop(SCOPE, source, sink, cursors, DedupLedger(store, cursors))


def _watermark(loop: PollLoop, kind: str) -> int:
    return loop.cursors.get_watermark(loop.scope_for(kind))


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_end_to_end_scenario(self):
        source = FakeSource(user_ops=[_op("a", 10), _op("b", 10), _op("c", 12)])
        sink = FakeSink()
        loop = _loop(source, sink)

        first = await loop.run_cycle()
        assert _watermark(loop, "user_op") == 12
        assert [event_id for event_id, _ in sink.sent] == ["a", "b", "c"]
        assert first.delivered == 3

        second = await loop.run_cycle()
        assert len(sink.sent) == 3
        assert second.fetched == 3
        assert second.skipped == 3
        assert second.notified == 0

    @pytest.mark.asyncio
    async def test_fetches_from_current_watermark(self):
        source = FakeSource(user_ops=[_op("a", 10)])
        loop = _loop(source, FakeSink())
        await loop.run_cycle()
        source.batches["user_op"] = []
        await loop.run_cycle()
        assert ("user_op", 0) in source.calls
        assert ("user_op", 10) in source.calls
        assert ("deployment", 0) in source.calls

    @pytest.mark.asyncio
    async def test_forward_progress_when_sink_always_fails(self):
        source = FakeSource(user_ops=[_op("a", 5), _op("b", 8)])
        sink = FakeSink(result=False)
        loop = _loop(source, sink)

        result = await loop.run_cycle()
        assert result.failed == 2
        assert _watermark(loop, "user_op") == 8

        await loop.run_cycle()
        assert len(sink.sent) == 2

    @pytest.mark.asyncio
    async def test_one_failure_does_not_abort_batch(self):
        def flaky(event):
            if event.id == "a":
                raise RuntimeError("sink exploded")
            return True

        source = FakeSource(user_ops=[_op("a", 5), _op("b", 6)])
        sink = FakeSink(result=flaky)
        loop = _loop(source, sink)

        result = await loop.run_cycle()
        assert [event_id for event_id, _ in sink.sent] == ["a", "b"]
        assert result.failed == 1
        assert result.delivered == 1

    @pytest.mark.asyncio
    async def test_upstream_unavailable_aborts_without_mutation(self):
        source = FakeSource(user_ops=[_op("a", 5)])
        source.error = UpstreamUnavailable("indexer down")
        sink = FakeSink()
        loop = _loop(source, sink)

        result = await loop.run_cycle()
        assert result.aborted is True
        assert sink.sent == []
        assert _watermark(loop, "user_op") == 0

        source.error = None
        await loop.run_cycle()
        assert [event_id for event_id, _ in sink.sent] == ["a"]

    @pytest.mark.asyncio
    async def test_kinds_interleave_by_block_with_deployments_first(self):
        source = FakeSource(
            user_ops=[_op("op-7", 7), _op("op-9", 9)],
            deployments=[_deploy("dep-7", 7), _deploy("dep-8", 8)],
        )
        sink = FakeSink()
        loop = _loop(source, sink)
        await loop.run_cycle()
        assert [event_id for event_id, _ in sink.sent] == ["dep-7", "op-7", "dep-8", "op-9"]
        assert _watermark(loop, "deployment") == 8
        assert _watermark(loop, "user_op") == 9

    @pytest.mark.asyncio
    async def test_kind_watermarks_do_not_mark_each_other_stale(self):
        source = FakeSource(user_ops=[_op("op", 20)])
        sink = FakeSink()
        loop = _loop(source, sink)
        await loop.run_cycle()

        source.batches = {"user_op": [], "deployment": [_deploy("late-dep", 15)]}
        await loop.run_cycle()
        assert [event_id for event_id, _ in sink.sent] == ["op", "late-dep"]

    @pytest.mark.asyncio
    async def test_wallet_context_passed_for_user_ops_only(self):
        wallet = WalletState("0xsender", 369, "0xfactory", "v0.7", 0, 3, 100)
        source = FakeSource(user_ops=[_op("op", 2)], deployments=[_deploy("dep", 1)], wallet=wallet)
        sink = FakeSink()
        await _loop(source, sink).run_cycle()
        assert sink.sent == [("dep", None), ("op", wallet)]


class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_runs_body_and_sleeps_remaining_interval(self):
        now = [0.0]
        sleeps: list[float] = []
        runs: list[int] = []

        async def body():
            runs.append(1)
            now[0] += 4.0

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        task = PeriodicTask(body, 15, clock=lambda: now[0], sleep=fake_sleep)
        await task.run(max_runs=3)
        assert len(runs) == 3
        assert sleeps == [11.0, 11.0]

    @pytest.mark.asyncio
    async def test_overrun_does_not_sleep(self):
        now = [0.0]
        sleeps: list[float] = []

        async def body():
            now[0] += 20.0

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        await PeriodicTask(body, 15, clock=lambda: now[0], sleep=fake_sleep).run(max_runs=2)
        assert sleeps == [0.0]

    @pytest.mark.asyncio
    async def test_failing_cycle_does_not_stop_task(self):
        runs: list[int] = []

        async def body():
            runs.append(1)
            raise RuntimeError("boom")

        async def fake_sleep(seconds):
            pass

        await PeriodicTask(body, 1, sleep=fake_sleep).run(max_runs=3)
        assert len(runs) == 3

    @pytest.mark.asyncio
    async def test_stop_cancels_running_task(self):
        started = asyncio.Event()

        async def body():
            started.set()

        task = PeriodicTask(body, 3600)
        running = task.start()
        await asyncio.wait_for(started.wait(), timeout=1)
        await task.stop()
        assert running.cancelled()
