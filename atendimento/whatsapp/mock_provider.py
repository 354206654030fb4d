from __future__ import annotations

from dataclasses import dataclass, field

from atendimento.services.tenants import TenantRuntime
from atendimento.whatsapp.base import SendResult


@dataclass
class SentMessage:
    tenant_id: str
    phone: str
    text: str
    remote_jid: str | None = None


@dataclass
class MockWhatsAppProvider:
    name: str = "mock"
    sent: list[SentMessage] = field(default_factory=list)
    fail: bool = False

    async def send_text(
        self,
        runtime: TenantRuntime,
        phone: str,
        text: str,
        remote_jid: str | None = None,
    ) -> SendResult:
        if self.fail:
            return SendResult(ok=False, error="mock configurado para falhar", attempts=1)
        self.sent.append(SentMessage(tenant_id=runtime.id, phone=phone, text=text, remote_jid=remote_jid))
        return SendResult(ok=True, number=phone, attempts=1)

    def texts_for(self, phone: str) -> list[str]:
        return [message.text for message in self.sent if message.phone == phone]
