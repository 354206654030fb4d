from __future__ import annotations

import logging

from atendimento.core.config import IS_DEV, WHATSAPP_MOCK_SEND
from atendimento.services.tenants import TenantRuntime
from atendimento.whatsapp.base import TransportProvider
from atendimento.whatsapp.evolution_provider import EvolutionWhatsAppProvider
from atendimento.whatsapp.mock_provider import MockWhatsAppProvider

logger = logging.getLogger(__name__)


class WhatsAppService:
    def __init__(
        self,
        *,
        evolution_provider: TransportProvider | None = None,
        mock_provider: MockWhatsAppProvider | None = None,
        force_mock: bool = WHATSAPP_MOCK_SEND,
        fallback_to_mock: bool = IS_DEV,
    ) -> None:
        self._evolution_provider = evolution_provider or EvolutionWhatsAppProvider()
        self._mock_provider = mock_provider or MockWhatsAppProvider()
        self.force_mock = force_mock
        self.fallback_to_mock = fallback_to_mock

    @property
    def mock(self) -> MockWhatsAppProvider:
        return self._mock_provider

    def _select_provider(self, runtime: TenantRuntime) -> TransportProvider:
        if self.force_mock or not runtime.evolution.configured:
            return self._mock_provider
        return self._evolution_provider

    async def send_text(
        self,
        runtime: TenantRuntime,
        phone: str,
        text: str,
        remote_jid: str | None = None,
    ) -> bool:
        """Envia texto ao cliente. Falhas de transporte nunca sobem para o turno."""
        provider = self._select_provider(runtime)
        try:
            result = await provider.send_text(runtime, phone, text, remote_jid)
        except Exception:
            logger.exception("Erro inesperado no envio WhatsApp", extra={"provider": provider.name, "phone": phone})
            return False

        if result.ok:
            logger.info(
                "Mensagem enviada (%s chars)",
                len(text or ""),
                extra={"provider": provider.name, "phone": phone},
            )
            return True

        logger.warning(
            "Falha no envio WhatsApp: %s",
            result.error,
            extra={"provider": provider.name, "phone": phone},
        )
        if provider is self._evolution_provider and self.fallback_to_mock:
            logger.warning("Evolution falhou, usando mock (tenant=%s)", runtime.id)
            fallback = await self._mock_provider.send_text(runtime, phone, text, remote_jid)
            return fallback.ok
        return False
