from __future__ import annotations

import time
from collections import OrderedDict
from threading import Lock

from atendimento.core.config import INBOUND_DEDUP_MAX_ENTRIES, INBOUND_DEDUP_WINDOW_MS


class InboundDeduplicator:
    """Descarta reentregas do mesmo message_id dentro da janela."""

    def __init__(
        self,
        *,
        window_ms: int = INBOUND_DEDUP_WINDOW_MS,
        max_entries: int = INBOUND_DEDUP_MAX_ENTRIES,
    ) -> None:
        self.window_seconds = max(window_ms, 0) / 1000
        self.max_entries = max(max_entries, 1)
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._lock = Lock()

    def seen(self, message_id: str | None, now: float | None = None) -> bool:
        """Registra o id e devolve True quando ele já foi visto."""
        if not message_id:
            return False
        current = time.monotonic() if now is None else now
        with self._lock:
            self._sweep(current)
            if message_id in self._seen:
                return True
            self._seen[message_id] = current
            while len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)
            return False

    def _sweep(self, now: float) -> None:
        while self._seen:
            _, first_seen = next(iter(self._seen.items()))
            if now - first_seen <= self.window_seconds:
                break
            self._seen.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
