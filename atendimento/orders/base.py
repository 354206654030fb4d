from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from atendimento.schemas.conversation import Address, Conversation
from atendimento.services.catalog_resolution import ResolvedLine
from atendimento.services.tenants import TenantRuntime


class OrderProviderError(Exception):
    def __init__(self, message: str, unresolved_items: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.unresolved_items = list(unresolved_items or [])


@dataclass
class OrderResult:
    ok: bool
    order_id: str | None = None
    provider: str | None = None
    error: str | None = None
    unresolved_items: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OrderDraft:
    """Pedido pronto para envio: linhas já resolvidas e total recalculado."""

    tenant_id: str
    phone: str
    customer_name: str
    mode: str
    payment: str
    address: Address
    notes: str
    lines: tuple[ResolvedLine, ...]
    delivery_fee_cents: int
    total_cents: int

    @classmethod
    def from_conversation(
        cls,
        conversation: Conversation,
        lines: list[ResolvedLine],
        total_cents: int,
    ) -> "OrderDraft":
        tx = conversation.transaction
        return cls(
            tenant_id=conversation.tenant_id,
            phone=conversation.phone,
            customer_name=tx.customer_name or conversation.contact_name,
            mode=tx.mode,
            payment=tx.payment,
            address=tx.address.model_copy(),
            notes=tx.notes,
            lines=tuple(lines),
            delivery_fee_cents=tx.delivery_fee_cents,
            total_cents=total_cents,
        )


class OrderProvider(Protocol):
    name: str

    async def create_order(self, runtime: TenantRuntime, draft: OrderDraft) -> OrderResult:
        ...


def cents_to_reais(value: int) -> float:
    return round((value or 0) / 100, 2)
