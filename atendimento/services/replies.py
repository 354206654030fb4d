from __future__ import annotations

import logging
from typing import Any

from atendimento.ai.service import AssistantAI
from atendimento.fsm.actions import ActionType, OrchestratorResult
from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import (
    MODE_DELIVERY,
    MODE_TAKEOUT,
    PAYMENT_CARD,
    PAYMENT_CASH,
    PAYMENT_PIX,
    PAYMENT_VOUCHER,
    Conversation,
    Transaction,
)
from atendimento.services.tenants import TenantRuntime
from atendimento.services.text_normalization import normalize

logger = logging.getLogger(__name__)

A = ActionType

FIELD_QUESTIONS = {
    "items": "Quais itens e quantidades você deseja?",
    "mode": "Seu pedido é para retirada ou delivery?",
    "payment": "Qual forma de pagamento você prefere: PIX, cartão ou dinheiro?",
    "customer_name": "Qual é o seu nome?",
    "notes": 'Deseja adicionar alguma observação? Se não, responda "sem observações".',
    "address.street_name": "Qual é o nome da rua para entrega?",
    "address.street_number": "Qual é o número do endereço?",
    "address.neighborhood": "Qual é o bairro?",
    "address.city": "Qual é a cidade?",
    "address.state": "Qual é o estado (UF)?",
    "address.postal_code": "Qual é o CEP?",
}

FIELD_LABELS = {
    "items": "itens do pedido",
    "mode": "tipo de entrega",
    "payment": "forma de pagamento",
    "customer_name": "nome",
    "notes": "observações do pedido",
    "address.street_name": "rua",
    "address.street_number": "número",
    "address.neighborhood": "bairro",
    "address.city": "cidade",
    "address.state": "estado",
    "address.postal_code": "CEP",
}

PAYMENT_LABELS = {
    PAYMENT_PIX: "PIX",
    PAYMENT_CARD: "cartão",
    PAYMENT_CASH: "dinheiro",
    PAYMENT_VOUCHER: "vale-refeição",
}

PIPELINE_ERROR_TEXT = "Tive uma falha técnica ao processar sua mensagem. Pode tentar novamente?"
HANDOFF_TEXT = "Entendi. Vou transferir você para um atendente humano."

# Ações em que o LLM pode reescrever o texto; as demais carregam preço ou número do pedido.
REPHRASE_ACTIONS = frozenset(
    {
        A.ANSWER_AND_RESUME,
        A.ANSWER_AND_RESUME_CONFIRM,
        A.CLARIFY,
        A.POST_CONFIRMATION_SUPPORT,
        A.UPSELL_SUGGEST,
        A.REQUEST_ADJUSTMENTS,
    }
)

_UPSELL_CATEGORIES = ("bebida", "sobremesa", "acompanhamento", "porcao")


def format_brl(cents: int) -> str:
    value = f"{(cents or 0) / 100:,.2f}"
    return "R$ " + value.replace(",", "X").replace(".", ",").replace("X", ".")


def describe_items(transaction: Transaction) -> str:
    return ", ".join(f"{item.quantity}x {item.name}" for item in transaction.items) or "-"


def field_value(transaction: Transaction, field_name: str) -> str:
    if field_name == "mode":
        return "retirada" if transaction.mode == MODE_TAKEOUT else "delivery"
    if field_name == "payment":
        return PAYMENT_LABELS.get(transaction.payment, transaction.payment or "-")
    if field_name == "items":
        return describe_items(transaction)
    if field_name.startswith("address."):
        return getattr(transaction.address, field_name.split(".", 1)[1], "") or "-"
    return getattr(transaction, field_name, "") or "-"


def ask_field(field_name: str | None) -> str:
    return FIELD_QUESTIONS.get(field_name or "", "Me passe os dados que faltam para continuar.")


def confirm_field(transaction: Transaction, field_name: str | None) -> str:
    if not field_name:
        return "Pode confirmar esse dado?"
    label = FIELD_LABELS.get(field_name, field_name)
    return f'Confirma {label}: "{field_value(transaction, field_name)}"? Responda sim ou não.'


def _lower_first(text: str) -> str:
    return text[:1].lower() + text[1:] if text else text


def order_summary(transaction: Transaction) -> str:
    lines = ["Resumo do pedido:"]
    if transaction.customer_name:
        lines.append(f"Cliente: {transaction.customer_name}")
    for item in transaction.items:
        if item.unit_price_cents is not None:
            lines.append(f"- {item.quantity}x {item.name} ({format_brl(item.unit_price_cents * item.quantity)})")
        else:
            lines.append(f"- {item.quantity}x {item.name}")
    if transaction.notes:
        lines.append(f"Observações: {transaction.notes}")
    if transaction.mode == MODE_DELIVERY:
        address = transaction.address
        street = ", ".join(part for part in (address.street_name, address.street_number) if part)
        where = " - ".join(part for part in (street, address.neighborhood) if part)
        lines.append(f"Entrega: {where or '-'}")
        if transaction.delivery_fee_cents:
            lines.append(f"Taxa de entrega: {format_brl(transaction.delivery_fee_cents)}")
    else:
        lines.append("Retirada no local")
    lines.append(f"Pagamento: {field_value(transaction, 'payment')}")
    lines.append(f"Total: {format_brl(transaction.total_amount_cents)}")
    return "\n".join(lines)


def render_menu(catalog: list[CatalogEntry], limit: int = 30) -> str:
    if not catalog:
        return "O cardápio não está disponível agora. Me diga o que deseja que eu verifico para você."
    lines = ["Nosso cardápio:"]
    current_category = None
    for entry in catalog[:limit]:
        if entry.category and entry.category != current_category:
            current_category = entry.category
            lines.append(f"*{entry.category}*")
        lines.append(f"- {entry.name}: {format_brl(entry.unit_price_cents)}")
    lines.append("O que vai querer hoje?")
    return "\n".join(lines)


def upsell_candidate(conversation: Conversation) -> CatalogEntry | None:
    in_cart = {item.catalog_code for item in conversation.transaction.items if item.catalog_code}
    for entry in conversation.catalog:
        if entry.code in in_cart:
            continue
        category = normalize(entry.category or "")
        if any(category.startswith(prefix) for prefix in _UPSELL_CATEGORIES):
            return entry
    return None


def _welcome(runtime: TenantRuntime, conversation: Conversation, result: OrchestratorResult) -> str:
    target = result.target_field or (result.missing[0] if result.missing else None)
    if not target:
        return runtime.greeting_message
    value = field_value(conversation.transaction, target)
    if target != "items" and value not in {"", "-"} and conversation.pending_field_confirmation == target:
        follow_up = confirm_field(conversation.transaction, target)
    else:
        follow_up = ask_field(target)
    return f"{runtime.greeting_message} {follow_up}".strip()


def render_reply(
    runtime: TenantRuntime,
    conversation: Conversation,
    result: OrchestratorResult,
) -> str:
    """Texto determinístico para a ação escolhida pelo orquestrador."""
    tx = conversation.transaction
    action = result.action
    target = result.target_field or (result.missing[0] if result.missing else None)
    details: dict[str, Any] = result.details or {}

    if action == A.WELCOME:
        return _welcome(runtime, conversation, result)
    if action == A.SHOW_MENU:
        return render_menu(conversation.catalog)
    if action == A.ASK_MISSING_FIELDS:
        return ask_field(target)
    if action == A.ASK_FIELD_CONFIRMATION:
        return confirm_field(tx, target)
    if action == A.ANSWER_AND_RESUME:
        return f"Respondendo rapidamente: posso ajudar com isso. Agora, {_lower_first(ask_field(target))}"
    if action == A.ANSWER_AND_RESUME_CONFIRM:
        return f"Respondendo rapidamente: posso ajudar com isso. Agora, {_lower_first(confirm_field(tx, target))}"
    if action == A.UPSELL_SUGGEST:
        entry = upsell_candidate(conversation)
        if entry is not None:
            return (
                f"Anotado! Que tal acompanhar com {entry.name} por {format_brl(entry.unit_price_cents)}? "
                'Se estiver tudo certo, é só dizer "só isso".'
            )
        return 'Anotado! Deseja mais alguma coisa? Se estiver tudo certo, é só dizer "só isso".'
    if action == A.ORDER_REVIEW:
        return f"{order_summary(tx)}\nPosso confirmar o pedido?"
    if action == A.CORRECTION_APPLIED:
        lines = details.get("lines") or []
        prefix = f"Ajustei: {', '.join(lines)}." if lines else "Não encontrei o que ajustar."
        return f"{prefix}\n{order_summary(tx)}\nPosso confirmar o pedido?"
    if action == A.REQUEST_ADJUSTMENTS:
        return "Certo, me diga o que deseja ajustar no pedido."
    if action == A.REPEAT_ORDER_OFFER:
        preview = conversation.repeat_preview or Transaction()
        return f"Que bom te ver de novo! Quer repetir seu último pedido ({describe_items(preview)})? Responda sim ou não."
    if action == A.CREATE_ORDER_AND_WAIT_PAYMENT:
        label = f"Pedido {tx.order_id}" if tx.order_id else "Pedido"
        return (
            f"{label} registrado! Total: {format_brl(tx.total_amount_cents)}. "
            'Agora aguardo a confirmação do pagamento PIX. Assim que pagar, me avise com "paguei".'
        )
    if action in {A.CREATE_ORDER_AND_CONFIRM, A.PAYMENT_CONFIRMED}:
        return "Pedido confirmado com sucesso! Já estamos preparando tudo."
    if action == A.PAYMENT_REMINDER:
        return 'Ainda não identifiquei a confirmação do pagamento. Assim que pagar, me avise com "paguei".'
    if action == A.FLOW_CANCELLED:
        return "Pedido cancelado. Se quiser, podemos começar um novo pedido."
    if action == A.BLOCK_NEW_ORDER_UNTIL_FINISH:
        return "Existe um pedido confirmado em andamento. Posso ajudar com ele primeiro."
    if action == A.POST_CONFIRMATION_SUPPORT:
        return "Seu pedido já está confirmado. Em que mais posso ajudar?"
    if action == A.HUMAN_HANDOFF:
        return HANDOFF_TEXT
    if action == A.END_CONVERSATION:
        return "Conversa encerrada."
    if action == A.ORDER_TOTAL_CORRECTED:
        return f"Recalculei o total do pedido.\n{order_summary(tx)}\nPosso confirmar o pedido?"
    if action == A.ORDER_VALIDATION_FAILED:
        error = details.get("error") or "dados incompletos"
        return f"Não consegui validar o pedido: {error}. Vamos ajustar?"
    if action == A.ORDER_ITEMS_NOT_FOUND:
        names = ", ".join(details.get("unresolved") or []) or "-"
        return (
            f"Não encontrei esses itens no cardápio: {names}. "
            "Pode informar exatamente como aparece no cardápio?"
        )
    if action == A.ORDER_PROVIDER_UNAVAILABLE:
        return "Tive um problema ao registrar o pedido no sistema. Pode confirmar novamente em instantes?"
    if action == A.ORDER_CHANGE_NOT_SENT:
        label = f"O pedido {tx.order_id}" if tx.order_id else "O pedido"
        return (
            f"{label} já foi registrado e essa alteração não foi enviada à loja. O pedido continua assim:\n"
            f"{order_summary(tx)}\nPara mudar um pedido já registrado, peça para falar com um atendente."
        )
    if action == A.FOLLOWUP_NUDGE:
        return f"Ainda está por aí? {ask_field(target) if target else 'Posso continuar seu pedido quando quiser.'}"
    if action == A.CART_EXPIRED:
        return "Como não tivemos retorno, cancelei o pedido em aberto. Quando quiser, é só chamar!"
    if action == A.PIPELINE_ERROR:
        return PIPELINE_ERROR_TEXT
    return "Não entendi completamente. Pode me explicar de forma objetiva?"


def unresolved_prefix(names: list[str]) -> str:
    if not names:
        return ""
    return f"Não encontrei no cardápio: {', '.join(names)}."


async def build_reply(
    ai: AssistantAI,
    runtime: TenantRuntime,
    conversation: Conversation,
    result: OrchestratorResult,
    user_text: str,
) -> str:
    base = render_reply(runtime, conversation, result)
    if result.action not in REPHRASE_ACTIONS or not ai.llm_enabled:
        return base
    generated = await ai.generate_reply(
        {
            "agent_name": runtime.agent_name,
            "tone": runtime.tone,
            "tenant_name": runtime.name,
            "custom_prompt": runtime.custom_prompt,
            "user_text": user_text,
            "base_reply": base,
            "action": result.action.value,
            "summary": conversation.context_summary,
            "model": runtime.model,
            "temperature": runtime.temperature,
        }
    )
    return generated or base
