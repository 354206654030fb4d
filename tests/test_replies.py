import asyncio

from atendimento.ai.service import AssistantAI
from atendimento.fsm.actions import ActionType, OrchestratorResult
from atendimento.fsm.states import ConversationState
from atendimento.schemas.conversation import (
    MODE_DELIVERY,
    PAYMENT_CASH,
    PAYMENT_PIX,
    Address,
    CartItem,
    Conversation,
    Transaction,
)
from atendimento.services.company_data import normalize_catalog
from atendimento.services.replies import (
    HANDOFF_TEXT,
    build_reply,
    confirm_field,
    format_brl,
    order_summary,
    render_menu,
    render_reply,
    upsell_candidate,
)
from atendimento.services.tenants import TenantRuntime
from tests.fixtures_data import CATALOG_ROWS

S = ConversationState
A = ActionType
CATALOG = normalize_catalog(CATALOG_ROWS)


class _FakeLLM:
    name = "fake"

    def __init__(self, reply):
        self.reply = reply
        self.contexts = []

    async def generate_reply(self, context):
        self.contexts.append(context)
        return self.reply


def _conversation(**tx) -> Conversation:
    transaction = Transaction(
        items=[
            CartItem(name="Pizza Calabresa", quantity=2, catalog_code="PZ-CAL", unit_price_cents=4990),
            CartItem(name="Coca-Cola Lata", quantity=1, catalog_code="BB-COC", unit_price_cents=650),
        ],
        total_amount_cents=10630,
    )
    for name, value in tx.items():
        setattr(transaction, name, value)
    return Conversation(
        id="pizzaria:5511999990000",
        tenant_id="pizzaria",
        phone="5511999990000",
        transaction=transaction,
        catalog=CATALOG,
    )


def _result(action, state=S.ADDING_ITEM, **kwargs) -> OrchestratorResult:
    return OrchestratorResult(next_state=state, action=action, **kwargs)


def test_format_brl():
    assert format_brl(123450) == "R$ 1.234,50"
    assert format_brl(500) == "R$ 5,00"
    assert format_brl(0) == "R$ 0,00"


def test_order_summary_for_delivery():
    conversation = _conversation(
        mode=MODE_DELIVERY,
        payment=PAYMENT_PIX,
        customer_name="João",
        address=Address(street_name="Rua das Flores", street_number="123", neighborhood="Centro"),
        delivery_fee_cents=500,
        total_amount_cents=11130,
    )

    summary = order_summary(conversation.transaction)

    assert summary.splitlines() == [
        "Resumo do pedido:",
        "Cliente: João",
        "- 2x Pizza Calabresa (R$ 99,80)",
        "- 1x Coca-Cola Lata (R$ 6,50)",
        "Entrega: Rua das Flores, 123 - Centro",
        "Taxa de entrega: R$ 5,00",
        "Pagamento: PIX",
        "Total: R$ 111,30",
    ]


def test_render_menu_groups_by_category():
    menu = render_menu(CATALOG)

    assert menu.startswith("Nosso cardápio:\n*Pizzas*\n- Pizza Calabresa: R$ 49,90")
    assert "*Bebidas*" in menu
    assert render_menu([]).startswith("O cardápio não está disponível agora")


def test_upsell_skips_items_already_in_cart():
    assert upsell_candidate(_conversation()).code == "BB-GUA"

    conversation = _conversation(items=[CartItem(name="Pudim", quantity=1, catalog_code="SB-PUD")])
    assert upsell_candidate(conversation).code == "BB-COC"


def test_confirm_field_uses_labels():
    transaction = Transaction(payment=PAYMENT_CASH)

    assert confirm_field(transaction, "payment") == 'Confirma forma de pagamento: "dinheiro"? Responda sim ou não.'


def test_render_reply_texts():
    runtime = TenantRuntime(id="pizzaria", greeting_message="Oi! Aqui é a Bia.")
    conversation = _conversation(order_id="mock-123")

    welcome = render_reply(runtime, conversation, _result(A.WELCOME, target_field="items"))
    assert welcome == "Oi! Aqui é a Bia. Quais itens e quantidades você deseja?"

    upsell = render_reply(runtime, conversation, _result(A.UPSELL_SUGGEST))
    assert "Guaraná Lata por R$ 6,00" in upsell

    waiting = render_reply(runtime, conversation, _result(A.CREATE_ORDER_AND_WAIT_PAYMENT, S.WAITING_PAYMENT))
    assert waiting.startswith("Pedido mock-123 registrado! Total: R$ 106,30.")

    not_found = render_reply(
        runtime, conversation, _result(A.ORDER_ITEMS_NOT_FOUND, details={"unresolved": ["Lasanha"]})
    )
    assert "Não encontrei esses itens no cardápio: Lasanha." in not_found

    assert render_reply(runtime, conversation, _result(A.HUMAN_HANDOFF, S.HUMAN_HANDOFF)) == HANDOFF_TEXT


def test_build_reply_rephrases_only_allowed_actions():
    llm = _FakeLLM("Perfeito! Quer uma bebida junto?")
    ai = AssistantAI(llm=llm)
    runtime = TenantRuntime(id="pizzaria", agent_name="Bia", model="modelo-tenant")
    conversation = _conversation()

    upsell = asyncio.run(build_reply(ai, runtime, conversation, _result(A.UPSELL_SUGGEST), "2 pizzas"))
    assert upsell == "Perfeito! Quer uma bebida junto?"
    assert llm.contexts[0]["agent_name"] == "Bia"
    assert llm.contexts[0]["model"] == "modelo-tenant"
    assert llm.contexts[0]["action"] == "UPSELL_SUGGEST"

    review = asyncio.run(build_reply(ai, runtime, conversation, _result(A.ORDER_REVIEW, S.FINALIZING), "pix"))
    assert "Total: R$ 106,30" in review
    assert len(llm.contexts) == 1


def test_build_reply_keeps_base_text_when_llm_returns_nothing():
    ai = AssistantAI(llm=_FakeLLM(None))
    runtime = TenantRuntime(id="pizzaria")

    reply = asyncio.run(build_reply(ai, runtime, _conversation(), _result(A.REQUEST_ADJUSTMENTS), "não"))

    assert reply == "Certo, me diga o que deseja ajustar no pedido."
