from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from atendimento.orders.base import OrderDraft, OrderProviderError, OrderResult
from atendimento.services.tenants import TenantRuntime


@dataclass
class MockOrderProvider:
    name: str = "mock"
    fail_with: str | None = None
    unresolved_items: list[str] = field(default_factory=list)
    raise_error: bool = False
    created: list[OrderDraft] = field(default_factory=list)

    async def create_order(self, runtime: TenantRuntime, draft: OrderDraft) -> OrderResult:
        if self.raise_error:
            raise OrderProviderError(self.fail_with or "falha simulada", self.unresolved_items)
        if self.fail_with or self.unresolved_items:
            return OrderResult(
                ok=False,
                provider=self.name,
                error=self.fail_with or "itens não encontrados",
                unresolved_items=list(self.unresolved_items),
            )
        self.created.append(draft)
        return OrderResult(ok=True, order_id=f"mock-{uuid.uuid4().hex[:10]}", provider=self.name)
