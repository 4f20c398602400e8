"""
Tests for the Dedup Ledger agent.

Run with:  pytest tests/test_dedup_ledger.py
"""
from __future__ import annotations

import pytest

from belt_monitor.agents.cursor_store import CursorStore
from belt_monitor.agents.dedup_ledger import DedupLedger
from belt_monitor.agents.state_store import MemoryStateStore, SqliteStateStore
from belt_monitor.models import Scope

SCOPE = Scope("369", "v0.7:user_op")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite"])
def ledger(request, tmp_path, clock):
    if request.param == "memory":
        store = MemoryStateStore(clock=clock)
    else:
        store = SqliteStateStore(tmp_path / "state.db", clock=clock)
    yield DedupLedger(store, CursorStore(store), ttl_seconds=3600)
    store.close()


class TestShouldNotify:
    def test_first_event_is_notified_and_advances_watermark(self, ledger):
        assert ledger.should_notify("a", 10, SCOPE) is True
        assert ledger._cursors.get_watermark(SCOPE) == 10
        assert ledger.is_recorded("a", SCOPE)

    def test_repeat_call_is_rejected(self, ledger):
        assert ledger.should_notify("a", 10, SCOPE) is True
        assert ledger.should_notify("a", 10, SCOPE) is False

    def test_boundary_tie_break(self, ledger):
        ledger._cursors.advance_watermark(SCOPE, 10)
        assert ledger.should_notify("x", 10, SCOPE) is True
        assert ledger.should_notify("x", 10, SCOPE) is False
        assert ledger.should_notify("y", 10, SCOPE) is True

    def test_stale_event_rejected_even_if_unseen(self, ledger):
        ledger.should_notify("a", 20, SCOPE)
        assert ledger.should_notify("never-seen", 19, SCOPE) is False
        assert not ledger.is_recorded("never-seen", SCOPE)

    def test_recorded_event_above_watermark_is_rejected(self, ledger):
        # A tombstone without a matching watermark advance (e.g. crash in between)
        ledger._store.set_if_absent(SCOPE.key("seen", "a"), "15", ttl=3600)
        assert ledger.should_notify("a", 15, SCOPE) is False

    def test_record_expires_after_ttl(self, ledger, clock):
        assert ledger.should_notify("a", 10, SCOPE) is True
        clock.now += 3601
        assert not ledger.is_recorded("a", SCOPE)
        # Still at the watermark, so the expired tombstone lets it through again
        assert ledger.should_notify("a", 10, SCOPE) is True

    def test_scopes_do_not_share_records(self, ledger):
        other = Scope("369", "v0.7:deployment")
        assert ledger.should_notify("a", 10, SCOPE) is True
        assert ledger.should_notify("a", 10, other) is True

    def test_expired_records_do_not_accumulate(self, ledger, clock):
        for i in range(1000):
            assert ledger.should_notify(f"op-{i}", 10 + i, SCOPE) is True
        clock.now += 10_000
        for i in range(10):
            ledger.should_notify(f"late-{i}", 5000 + i, SCOPE)
        # The watermark plus the ten fresh tombstones
        assert ledger._store.count() == 11
