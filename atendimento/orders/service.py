from __future__ import annotations

import logging

from atendimento.orders.anafood_provider import AnaFoodOrderProvider
from atendimento.orders.base import OrderDraft, OrderProvider, OrderProviderError, OrderResult
from atendimento.orders.mock_provider import MockOrderProvider
from atendimento.orders.saipos_provider import SaiposClient, SaiposOrderProvider
from atendimento.services.tenants import TenantRuntime

logger = logging.getLogger(__name__)


class OrderProviderService:
    def __init__(self, providers: dict[str, OrderProvider] | None = None, saipos_client: SaiposClient | None = None) -> None:
        if providers is None:
            providers = {
                "saipos": SaiposOrderProvider(saipos_client),
                "anafood": AnaFoodOrderProvider(),
                "mock": MockOrderProvider(),
            }
        self._providers = providers

    def get(self, name: str | None) -> OrderProvider | None:
        if not name:
            return None
        return self._providers.get(name.strip().lower())

    async def _call(self, provider: OrderProvider, runtime: TenantRuntime, draft: OrderDraft) -> OrderResult:
        try:
            return await provider.create_order(runtime, draft)
        except OrderProviderError as exc:
            return OrderResult(
                ok=False,
                provider=provider.name,
                error=exc.message,
                unresolved_items=exc.unresolved_items,
            )
        except Exception as exc:
            logger.exception("Erro inesperado no provedor de pedidos", extra={"provider": provider.name})
            return OrderResult(ok=False, provider=provider.name, error=str(exc))

    async def submit(self, runtime: TenantRuntime, draft: OrderDraft) -> OrderResult:
        """Envia ao provedor primário e, se configurado, ao secundário.

        Itens não reconhecidos pelo primário não disparam o secundário: o
        cliente precisa corrigir o pedido antes.
        """
        primary = self.get(runtime.order_provider)
        if primary is None:
            return OrderResult(ok=False, error=f"Provedor desconhecido: {runtime.order_provider}")

        result = await self._call(primary, runtime, draft)
        if result.ok or result.unresolved_items:
            return result

        logger.warning(
            "Provedor primário falhou: %s",
            result.error,
            extra={"provider": primary.name, "integration": "orders"},
        )
        secondary = self.get(runtime.fallback_provider)
        if secondary is None or secondary is primary:
            return result

        fallback = await self._call(secondary, runtime, draft)
        if not fallback.ok:
            logger.warning(
                "Provedor secundário também falhou: %s",
                fallback.error,
                extra={"provider": secondary.name, "integration": "orders"},
            )
        return fallback
