from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock


@dataclass
class _FailureState:
    count: int = 0
    last_failure_at: float = 0.0


class IntegrationBackoff:
    """Contador de falhas consecutivas por tenant e integração externa.

    Abaixo do limite não há espera. A partir dele o atraso dobra a cada falha
    (1s, 2s, 4s...) até ``max_delay_seconds``. Um sucesso zera o contador.
    """

    def __init__(self, *, threshold: int = 3, max_delay_seconds: float = 8.0) -> None:
        self.threshold = threshold
        self.max_delay_seconds = max_delay_seconds
        self._states: dict[tuple[str, str], _FailureState] = {}
        self._lock = Lock()

    def delay_for(self, tenant_id: str, integration: str) -> float:
        with self._lock:
            state = self._states.get((tenant_id, integration))
            failures = state.count if state else 0
        if failures < self.threshold:
            return 0.0
        return float(min(2 ** (failures - self.threshold), self.max_delay_seconds))

    def failures(self, tenant_id: str, integration: str) -> int:
        with self._lock:
            state = self._states.get((tenant_id, integration))
            return state.count if state else 0

    def record_success(self, tenant_id: str, integration: str) -> None:
        with self._lock:
            self._states.pop((tenant_id, integration), None)

    def record_failure(self, tenant_id: str, integration: str) -> int:
        with self._lock:
            state = self._states.setdefault((tenant_id, integration), _FailureState())
            state.count += 1
            state.last_failure_at = time.monotonic()
            return state.count

    def seconds_since_last_failure(self, tenant_id: str, integration: str) -> float | None:
        with self._lock:
            state = self._states.get((tenant_id, integration))
            last = state.last_failure_at if state else None
        if last is None:
            return None
        return time.monotonic() - last

    def status(self) -> dict[str, dict[str, int]]:
        """Falhas consecutivas agrupadas por tenant, só integrações com falha."""
        with self._lock:
            items = [(key, state.count) for key, state in self._states.items() if state.count]
        result: dict[str, dict[str, int]] = {}
        for (tenant_id, integration), count in items:
            result.setdefault(tenant_id, {})[integration] = count
        return result

    def reset(self) -> None:
        with self._lock:
            self._states.clear()


integration_backoff = IntegrationBackoff()
