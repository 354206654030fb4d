from __future__ import annotations

from fastapi import APIRouter, Depends

from atendimento.core.metrics import turn_metrics
from atendimento.deps import require_operator
from atendimento.services.integration_backoff import integration_backoff

router = APIRouter(prefix="/internal/metrics", tags=["internal-metrics"])


@router.get("")
def tenant_metrics(_operator: None = Depends(require_operator)):
    return {
        "tenants": turn_metrics.snapshot_per_tenant(),
        "integracoes_com_falha": integration_backoff.status(),
    }
