from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from atendimento.services.integration_backoff import IntegrationBackoff, integration_backoff
from atendimento.services.tenants import TenantRuntime
from atendimento.whatsapp.base import InboundMessage, SendResult, canonical_phone, only_digits

logger = logging.getLogger(__name__)

_UNWRAP_KEYS = ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2", "viewOnceMessageV2Extension")


def _unwrap_message(message: dict[str, Any]) -> dict[str, Any]:
    for key in _UNWRAP_KEYS:
        inner = (message.get(key) or {}).get("message")
        if inner:
            return inner
    return message


def extract_text(message: dict[str, Any]) -> str:
    msg = _unwrap_message(message or {})
    candidates = (
        msg.get("conversation"),
        (msg.get("extendedTextMessage") or {}).get("text"),
        (msg.get("imageMessage") or {}).get("caption"),
        (msg.get("videoMessage") or {}).get("caption"),
        (msg.get("documentMessage") or {}).get("caption"),
        (msg.get("buttonsResponseMessage") or {}).get("selectedDisplayText"),
        (msg.get("templateButtonReplyMessage") or {}).get("selectedDisplayText"),
        (msg.get("listResponseMessage") or {}).get("title"),
        ((msg.get("listResponseMessage") or {}).get("singleSelectReply") or {}).get("selectedRowId"),
    )
    return next((str(value) for value in candidates if value), "")


def parse_evolution_webhook(body: dict[str, Any]) -> InboundMessage | None:
    """Normaliza um evento de mensagem da Evolution API.

    Retorna None para mensagens enviadas pela própria instância, eventos sem
    telefone válido ou sem texto processável.
    """
    raw_data = body.get("data")
    payload = raw_data[0] if isinstance(raw_data, list) and raw_data else (raw_data or body)
    if not isinstance(payload, dict):
        return None

    first = (payload.get("messages") or [{}])[0] or {}
    key = payload.get("key") or first.get("key") or {}
    from_me = key.get("fromMe", payload.get("fromMe", False))
    if from_me:
        return None

    remote_jid = str(
        key.get("remoteJid")
        or payload.get("remoteJid")
        or payload.get("chatId")
        or payload.get("sender")
        or ""
    )
    participant = str(key.get("participant") or payload.get("participant") or "")
    source_jid = participant if remote_jid.endswith("@g.us") and participant else remote_jid
    phone = canonical_phone(source_jid.split("@")[0])
    if not phone:
        return None

    message = payload.get("message") or first.get("message") or {}
    text = (extract_text(message) or str(payload.get("text") or "")).strip()
    has_audio = bool(message.get("audioMessage") or message.get("pttMessage"))
    if not text and not has_audio:
        return None

    contact_name = (
        payload.get("pushName")
        or payload.get("notify")
        or payload.get("contactName")
        or payload.get("senderName")
        or ""
    )
    return InboundMessage(
        message_id=str(key.get("id") or payload.get("id") or ""),
        phone=phone,
        text=text,
        remote_jid=remote_jid,
        participant_jid=participant,
        contact_name=str(contact_name),
        instance=body.get("instance") or payload.get("instance") or payload.get("instanceName"),
        has_audio=has_audio,
        raw=payload,
    )


def number_variants(phone: str, remote_jid: str | None = None) -> list[str]:
    raw = (phone or "").strip()
    digits = only_digits(raw)
    candidates = [
        f"{digits}@s.whatsapp.net" if digits else "",
        f"{digits}@c.us" if digits else "",
        digits,
        raw,
        (remote_jid or "").strip(),
        f"{digits}@lid" if digits else "",
    ]
    seen: list[str] = []
    for candidate in candidates:
        if candidate and candidate not in seen:
            seen.append(candidate)
    return seen


def payload_variants(number: str, text: str) -> list[dict[str, Any]]:
    return [
        {"number": number, "text": text, "delay": 600},
        {"number": number, "textMessage": {"text": text}, "options": {"delay": 600}},
        {"number": number, "textMessage": {"text": text}},
    ]


class EvolutionWhatsAppProvider:
    name = "evolution"
    INTEGRATION_NAME = "evolution"

    def __init__(
        self,
        *,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff: IntegrationBackoff | None = None,
    ) -> None:
        self.timeout = timeout
        self.transport = transport
        self.backoff = backoff or integration_backoff

    async def send_text(
        self,
        runtime: TenantRuntime,
        phone: str,
        text: str,
        remote_jid: str | None = None,
    ) -> SendResult:
        settings = runtime.evolution
        body = (text or "").strip()
        if not settings.configured or not body:
            return SendResult(ok=False, error="Parâmetros inválidos para envio")

        delay = self.backoff.delay_for(runtime.id, self.INTEGRATION_NAME)
        if delay > 0:
            logger.warning(
                "Backoff da Evolution ativo, aguardando %.1fs",
                delay,
                extra={"integration": self.INTEGRATION_NAME, "phone": phone},
            )
            await asyncio.sleep(delay)

        url = f"{settings.api_url}/message/sendText/{settings.instance}"
        headers = {
            "apikey": settings.api_key,
            "Authorization": f"Bearer {settings.api_key}",
            "Content-Type": "application/json",
        }
        attempts = 0
        last_error: str | None = None

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for number in number_variants(phone, remote_jid):
                for payload in payload_variants(number, body):
                    attempts += 1
                    try:
                        response = await client.post(url, headers=headers, json=payload)
                    except httpx.HTTPError as exc:
                        last_error = str(exc)
                        continue
                    if 200 <= response.status_code < 300:
                        self.backoff.record_success(runtime.id, self.INTEGRATION_NAME)
                        return SendResult(ok=True, number=number, attempts=attempts)
                    last_error = f"HTTP {response.status_code} {response.text[:300]}"
                    if response.status_code in {400, 404}:
                        # número não reconhecido: tenta a próxima variante
                        break

        failures = self.backoff.record_failure(runtime.id, self.INTEGRATION_NAME)
        if failures == self.backoff.threshold:
            logger.warning(
                "Evolution atingiu %s falhas seguidas",
                failures,
                extra={"integration": self.INTEGRATION_NAME},
            )
        return SendResult(ok=False, error=last_error or "Falha desconhecida no envio de texto", attempts=attempts)
