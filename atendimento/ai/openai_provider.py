from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from atendimento.ai.schema import Intent
from atendimento.core.config import OPENAI_API_KEY, OPENAI_BASE_URL, OPENAI_MODEL, OPENAI_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_CLASSIFY_PROMPT = (
    "Você classifica mensagens de clientes de um restaurante no WhatsApp. "
    "Responda somente JSON com as chaves intent, requires_extraction, confidence e handoff. "
    f"intent deve ser um de: {', '.join(intent.value for intent in Intent)}. "
    "confidence vai de 0 a 1. handoff é true apenas quando o cliente pede um atendente humano."
)
_EXTRACT_PROMPT = (
    "Extraia dados de pedido da mensagem. Responda somente JSON com as chaves opcionais "
    "items (lista de {name, quantity}), remove_items, mode (DELIVERY ou TAKEOUT), "
    "payment (PIX, CARD, CASH ou VOUCHER), customer_name, notes e address "
    "({street_name, street_number, neighborhood, city, state, postal_code}). "
    "Omita campos ausentes. Nunca invente quantidade: sem número explícito use 1."
)
_SUMMARY_PROMPT = (
    "Resuma a conversa em até 3 frases em português, mantendo itens, endereço, "
    "forma de pagamento e pendências."
)


class OpenAIProvider:
    name = "openai"

    def __init__(
        self,
        *,
        api_key: str = OPENAI_API_KEY,
        model: str = OPENAI_MODEL,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = OPENAI_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def _complete(
        self,
        messages: list[dict[str, str]],
        *,
        json_mode: bool,
        model: str | None = None,
        temperature: float = 0.0,
    ) -> str:
        body: dict[str, Any] = {
            "model": model or self.model,
            "temperature": temperature,
            "messages": messages,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/chat/completions", headers=headers, json=body)
        response.raise_for_status()
        data = response.json()
        return str(data["choices"][0]["message"]["content"] or "")

    async def _complete_json(self, system: str, user: str) -> dict[str, Any]:
        content = await self._complete(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            json_mode=True,
        )
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("resposta do modelo não é um objeto JSON")
        return parsed

    async def classify(self, state: str, text: str, context: dict[str, Any]) -> dict[str, Any]:
        user = json.dumps(
            {"estado": state, "mensagem": text, "resumo": context.get("summary") or ""},
            ensure_ascii=False,
        )
        return await self._complete_json(_CLASSIFY_PROMPT, user)

    async def extract(self, text: str, menu_hint: list[str]) -> dict[str, Any]:
        user = json.dumps({"mensagem": text, "cardapio": menu_hint[:60]}, ensure_ascii=False)
        return await self._complete_json(_EXTRACT_PROMPT, user)

    async def generate_reply(self, context: dict[str, Any]) -> str | None:
        system = (
            f"Você é {context.get('agent_name') or 'Ana'}, atendente {context.get('tone') or ''} "
            f"do restaurante {context.get('tenant_name') or ''}. Responda em português do Brasil, "
            "em no máximo 3 frases, sem inventar preços ou itens. "
            "Reescreva a mensagem-base mantendo todas as informações e a pergunta final."
        )
        if context.get("custom_prompt"):
            system = f"{system}\n{context['custom_prompt']}"
        user = json.dumps(
            {
                "mensagem_cliente": context.get("user_text") or "",
                "mensagem_base": context.get("base_reply") or "",
                "acao": context.get("action") or "",
                "resumo": context.get("summary") or "",
            },
            ensure_ascii=False,
        )
        content = await self._complete(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            json_mode=False,
            model=context.get("model"),
            temperature=float(context.get("temperature") or 0.2),
        )
        return content.strip() or None

    async def summarize(self, messages: list[dict[str, str]]) -> str | None:
        transcript = "\n".join(f"{m.get('role')}: {m.get('content')}" for m in messages)
        content = await self._complete(
            [{"role": "system", "content": _SUMMARY_PROMPT}, {"role": "user", "content": transcript}],
            json_mode=False,
        )
        return content.strip() or None


def build_llm_provider() -> OpenAIProvider | None:
    if not OPENAI_API_KEY:
        logger.info("OPENAI_API_KEY ausente: usando apenas regras determinísticas")
        return None
    return OpenAIProvider()
