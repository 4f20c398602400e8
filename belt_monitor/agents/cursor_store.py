"""
Cursor Store Agent — the per-scope watermark (highest fully processed block).
"""
from __future__ import annotations

import logging

from belt_monitor.agents.state_store import StateStore
from belt_monitor.models import Scope

log = logging.getLogger(__name__)


class CursorStore:
    def __init__(self, store: StateStore) -> None:
        self._store = store

    @staticmethod
    def _key(scope: Scope) -> str:
        return scope.key("watermark")

    def get_watermark(self, scope: Scope) -> int:
        """Return the stored watermark for *scope*, or 0 if none has been recorded."""
        raw = self._store.get(self._key(scope))
        return int(raw) if raw is not None else 0

    def advance_watermark(self, scope: Scope, position: int) -> bool:
        """
        Move the watermark for *scope* to *position* if that is strictly higher.

        Lower or equal positions are a no-op, not an error. Returns True if the
        stored value changed.
        """
        advanced = self._store.set_if_greater(self._key(scope), position)
        if advanced:
            log.debug("[%s] Watermark advanced to %d", scope, position)
        return advanced
