"""
Dedup Ledger Agent — decides whether an event still needs a notification.

The watermark alone cannot tell apart several events that share a block, so
events at the watermark are checked against a per-event tombstone. Events
below the watermark are rejected without a lookup, which keeps the ledger
bounded but means an upstream that republishes old blocks is not caught.
"""
from __future__ import annotations

import logging

from belt_monitor.agents.cursor_store import CursorStore
from belt_monitor.agents.state_store import StateStore
from belt_monitor.models import Scope

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 86400


class DedupLedger:
    def __init__(
        self,
        store: StateStore,
        cursors: CursorStore,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._store = store
        self._cursors = cursors
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def _key(scope: Scope, event_id: str) -> str:
        return scope.key("seen", event_id)

    def is_recorded(self, event_id: str, scope: Scope) -> bool:
        return self._store.exists(self._key(scope, event_id))

    def should_notify(self, event_id: str, position: int, scope: Scope) -> bool:
        """
        Return True exactly once per unseen event, recording it and advancing
        the watermark for *scope* as a side effect.
        """
        watermark = self._cursors.get_watermark(scope)

        if position < watermark:
            log.debug("[%s] Stale event %s at %d (watermark %d)", scope, event_id, position, watermark)
            return False

        # Set-if-absent is the only write, so two callers can never both win.
        recorded = self._store.set_if_absent(
            self._key(scope, event_id), str(position), ttl=self.ttl_seconds
        )
        if not recorded:
            log.debug("[%s] Duplicate event %s at %d", scope, event_id, position)
            return False

        if position > watermark:
            self._cursors.advance_watermark(scope, position)
        return True
