from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from atendimento.ai.base import LLMCapability
from atendimento.ai.rule_provider import RuleBasedProvider, classify_text
from atendimento.ai.schema import Classification
from atendimento.schemas.extraction import PartialUpdate
from atendimento.services.field_extraction import has_incremental_cue, has_multiplicity_marker

logger = logging.getLogger(__name__)


def enforce_quantity_policy(update: PartialUpdate, text: str) -> PartialUpdate:
    """Aplica à saída do LLM as mesmas regras de quantidade do extrator determinístico."""
    if not update.items:
        return update
    multiplicity = has_multiplicity_marker(text)
    incremental = has_incremental_cue(text)
    items = [
        item.model_copy(
            update={
                "quantity": item.quantity if multiplicity else 1,
                "incremental": incremental,
            }
        )
        for item in update.items
    ]
    return update.model_copy(update={"items": items})


class AssistantAI:
    """LLM opcional com fallback para as regras determinísticas."""

    def __init__(self, llm: LLMCapability | None = None, rules: RuleBasedProvider | None = None) -> None:
        self.llm = llm
        self.rules = rules or RuleBasedProvider()

    @property
    def llm_enabled(self) -> bool:
        return self.llm is not None

    async def classify(self, state: str, text: str, context: dict[str, Any] | None = None) -> Classification:
        if self.llm is not None:
            try:
                raw = await self.llm.classify(state, text, context or {})
                return Classification.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Classificação do LLM inválida: %s", exc, extra={"provider": self.llm.name})
            except Exception as exc:
                logger.warning("Falha no LLM ao classificar: %s", exc, extra={"provider": self.llm.name})
        return classify_text(state, text)

    async def extract(self, text: str, menu_hint: list[str] | None = None, *, allow_fallback: bool = True) -> PartialUpdate:
        update = self.rules.extract_update(text)
        if not update.is_empty() or self.llm is None or not allow_fallback:
            return update

        try:
            raw = await self.llm.extract(text, list(menu_hint or []))
            fallback = PartialUpdate.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Extração do LLM inválida: %s", exc, extra={"provider": self.llm.name})
            return update
        except Exception as exc:
            logger.warning("Falha no LLM ao extrair: %s", exc, extra={"provider": self.llm.name})
            return update
        return enforce_quantity_policy(fallback, text)

    async def generate_reply(self, context: dict[str, Any]) -> str | None:
        if self.llm is None:
            return None
        try:
            reply = await self.llm.generate_reply(context)
        except Exception as exc:
            logger.warning("Falha no LLM ao gerar resposta: %s", exc, extra={"provider": self.llm.name})
            return None
        return (reply or "").strip() or None

    async def summarize(self, messages: list[dict[str, str]]) -> str | None:
        if self.llm is not None:
            try:
                summary = await self.llm.summarize(messages)
                if summary:
                    return summary.strip()
            except Exception as exc:
                logger.warning("Falha no LLM ao resumir: %s", exc, extra={"provider": self.llm.name})
        return await self.rules.summarize(messages)
