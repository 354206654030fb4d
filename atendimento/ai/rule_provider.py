from __future__ import annotations

import re
from typing import Any

from atendimento.ai.schema import Classification, Intent
from atendimento.schemas.extraction import PartialUpdate
from atendimento.services.field_extraction import detect_signals, extract
from atendimento.services.text_normalization import normalize

_SPAM_RE = re.compile(
    r"\b(?:ganhe dinheiro|renda extra|clique (?:aqui|no link)|promocao imperdivel|bit ly|"
    r"investimento garantido|trabalhe de casa|emprestimo aprovado|seu premio|voce foi sorteado)\b"
)
_SUPPORT_RE = re.compile(
    r"\b(?:status|cade|demora|demorando|atrasad[oa]|atraso|chegou|nao chegou|previsao|"
    r"saiu pra entrega|saiu para entrega|reclama\w*|problema)\b"
)
_ORDER_RE = re.compile(r"\b(?:quero|queria|gostaria|pedir|pedido|manda|me ve|me da|vou querer|traz)\b")

_MID_FLOW_STATES = {
    "MENU",
    "ADDING_ITEM",
    "CONFIRMING_CART",
    "COLLECTING_ADDRESS",
    "COLLECTING_PAYMENT",
    "FINALIZING",
    "WAITING_PAYMENT",
}


def classify_text(state: str, text: str) -> Classification:
    """Classificador determinístico por palavras-chave.

    Nunca devolve confiança abaixo de 0.5, então sozinho não aciona o
    transbordo por baixa confiança.
    """
    normalized = normalize(text)
    signals = detect_signals(text)
    update = extract(text)
    has_order_data = bool(update.items or update.remove_items) or update.has_logistics()
    mid_flow = state in _MID_FLOW_STATES
    requires_extraction = has_order_data or mid_flow or bool(update.customer_name or update.notes)

    def result(intent: Intent, confidence: float, *, handoff: bool = False) -> Classification:
        return Classification(
            intent=intent,
            requires_extraction=requires_extraction,
            confidence=confidence,
            handoff=handoff,
        )

    if signals.human_request:
        return result(Intent.HUMAN, 0.9, handoff=True)
    if _SPAM_RE.search(normalized) and not has_order_data:
        return result(Intent.SPAM, 0.8)
    if signals.cancel:
        return result(Intent.CANCEL, 0.85)
    if signals.payment_confirmed:
        return result(Intent.PAYMENT, 0.85)
    if signals.repeat_request:
        return result(Intent.REPEAT_ORDER, 0.8)
    if signals.menu_request and not update.items:
        return result(Intent.MENU, 0.8)
    if state == "CONFIRMED" and _SUPPORT_RE.search(normalized):
        return result(Intent.SUPPORT, 0.75)
    if has_order_data or (_ORDER_RE.search(normalized) and not signals.question):
        return result(Intent.MANAGE_ORDER if mid_flow else Intent.NEW_ORDER, 0.75)
    if signals.greeting:
        return result(Intent.GREETING, 0.8)
    if signals.question:
        return result(Intent.QUESTION, 0.6)
    if mid_flow:
        return result(Intent.MANAGE_ORDER, 0.6)
    return result(Intent.QUESTION, 0.5)


def summarize_messages(messages: list[dict[str, str]], limit: int = 6) -> str:
    recent = [m for m in messages if m.get("role") == "user" and m.get("content")][-limit:]
    return " | ".join(m["content"].strip()[:120] for m in recent)


class RuleBasedProvider:
    name = "rules"

    async def classify(self, state: str, text: str, context: dict[str, Any]) -> dict[str, Any]:
        return classify_text(state, text).model_dump(mode="json")

    async def extract(self, text: str, menu_hint: list[str]) -> dict[str, Any]:
        return extract(text).model_dump(exclude_none=True)

    async def generate_reply(self, context: dict[str, Any]) -> str | None:
        return None

    async def summarize(self, messages: list[dict[str, str]]) -> str | None:
        return summarize_messages(messages) or None

    def extract_update(self, text: str) -> PartialUpdate:
        return extract(text)
