from __future__ import annotations

from dataclasses import dataclass
from threading import Lock


@dataclass
class TurnMetric:
    turns: int = 0
    duplicates: int = 0
    failures: int = 0
    orders_created: int = 0
    handoffs: int = 0
    total_duration_ms: float = 0.0


class InMemoryTurnMetrics:
    def __init__(self) -> None:
        self._tenant_metrics: dict[str, TurnMetric] = {}
        self._lock = Lock()

    def _metric(self, tenant_id: str) -> TurnMetric:
        return self._tenant_metrics.setdefault(tenant_id or "default", TurnMetric())

    def observe_turn(self, tenant_id: str, duration_ms: float, *, failed: bool = False) -> None:
        with self._lock:
            metric = self._metric(tenant_id)
            metric.turns += 1
            metric.total_duration_ms += duration_ms
            if failed:
                metric.failures += 1

    def observe_duplicate(self, tenant_id: str) -> None:
        with self._lock:
            self._metric(tenant_id).duplicates += 1

    def observe_order(self, tenant_id: str) -> None:
        with self._lock:
            self._metric(tenant_id).orders_created += 1

    def observe_handoff(self, tenant_id: str) -> None:
        with self._lock:
            self._metric(tenant_id).handoffs += 1

    def snapshot_per_tenant(self) -> dict[str, dict[str, float | int]]:
        with self._lock:
            result: dict[str, dict[str, float | int]] = {}
            for tenant_id, metric in self._tenant_metrics.items():
                avg = metric.total_duration_ms / metric.turns if metric.turns else 0.0
                result[tenant_id] = {
                    "turnos": metric.turns,
                    "duplicados": metric.duplicates,
                    "falhas": metric.failures,
                    "pedidos_criados": metric.orders_created,
                    "transferencias_humano": metric.handoffs,
                    "latencia_media_ms": round(avg, 2),
                }
            return result

    def reset(self) -> None:
        with self._lock:
            self._tenant_metrics.clear()


turn_metrics = InMemoryTurnMetrics()
