import asyncio

from atendimento.ai.service import AssistantAI
from atendimento.core.metrics import turn_metrics
from atendimento.fsm.actions import ActionType
from atendimento.fsm.states import ConversationState
from atendimento.orders.mock_provider import MockOrderProvider
from atendimento.orders.service import OrderProviderService
from atendimento.schemas.conversation import CartItem, Transaction
from atendimento.services.assistant import OrderAssistant, text_hash
from atendimento.services.company_data import StaticCatalogSource
from atendimento.services.conversation_timers import ConversationTimers
from atendimento.services.conversations import ConversationRepository
from atendimento.services.inbound_dedup import InboundDeduplicator
from atendimento.services.replies import HANDOFF_TEXT, PIPELINE_ERROR_TEXT
from atendimento.services.tenants import TenantRuntime
from atendimento.whatsapp.base import InboundMessage
from atendimento.whatsapp.service import WhatsAppService
from tests.fixtures_data import CATALOG_ROWS, DELIVERY_AREAS

S = ConversationState
A = ActionType
PHONE = "5511999990000"
KEY = f"pizzaria:{PHONE}"


class _BrokenCatalogSource:
    async def load_catalog(self, runtime):
        raise RuntimeError("cardápio indisponível")

    async def load_delivery_fee(self, runtime, address):
        return None


def _runtime(**overrides) -> TenantRuntime:
    runtime = TenantRuntime(
        id="pizzaria",
        catalog=CATALOG_ROWS,
        delivery_areas=DELIVERY_AREAS,
        order_provider="mock",
    )
    for name, value in overrides.items():
        setattr(runtime, name, value)
    return runtime


def _assistant(catalog_source=None, provider=None) -> OrderAssistant:
    assistant = OrderAssistant(
        repository=ConversationRepository(),
        ai=AssistantAI(),
        whatsapp=WhatsAppService(force_mock=True, fallback_to_mock=False),
        providers=OrderProviderService({"mock": provider or MockOrderProvider()}),
        catalog_source=catalog_source or StaticCatalogSource(),
        dedup=InboundDeduplicator(),
        duplicate_window_seconds=90,
    )
    assistant.timers = ConversationTimers(assistant._on_timer, nudge_ms=0, cancel_ms=0)
    return assistant


def _turn(assistant, runtime, text):
    return asyncio.run(assistant.run_turn(runtime, KEY, text))


def test_full_delivery_order_with_pix():
    turn_metrics.reset()
    provider = MockOrderProvider()
    assistant = _assistant(provider=provider)
    runtime = _runtime()
    assistant.repository.get_or_create("pizzaria", PHONE)

    welcome = _turn(assistant, runtime, "oi")
    assert (welcome.state, welcome.action) == (S.ADDING_ITEM, A.WELCOME)
    assert welcome.reply == f"{runtime.greeting_message} Quais itens e quantidades você deseja?"

    items = _turn(assistant, runtime, "quero 2 pizzas calabresa e 1 coca")
    assert items.action == A.UPSELL_SUGGEST
    assert "Guaraná Lata por R$ 6,00" in items.reply
    conversation = assistant.repository.get(KEY)
    assert [(i.catalog_code, i.quantity) for i in conversation.transaction.items] == [("PZ-CAL", 2), ("BB-COC", 1)]
    assert conversation.transaction.total_amount_cents == 10630

    finish = _turn(assistant, runtime, "só isso")
    assert finish.state == S.CONFIRMING_CART
    assert finish.reply == "Seu pedido é para retirada ou delivery?"

    address = _turn(assistant, runtime, "entrega na Rua das Flores, 123, bairro Centro")
    assert address.state == S.COLLECTING_PAYMENT
    assert conversation.transaction.delivery_fee_cents == 500
    assert conversation.transaction.total_amount_cents == 11130

    review = _turn(assistant, runtime, "pix")
    assert (review.state, review.action) == (S.FINALIZING, A.ORDER_REVIEW)
    assert "Total: R$ 111,30" in review.reply

    created = _turn(assistant, runtime, "sim")
    assert (created.state, created.action) == (S.WAITING_PAYMENT, A.CREATE_ORDER_AND_WAIT_PAYMENT)
    assert conversation.transaction.order_id.startswith("mock-")
    assert provider.created[0].total_cents == 11130

    paid = _turn(assistant, runtime, "paguei")
    assert (paid.state, paid.action) == (S.CONFIRMED, A.PAYMENT_CONFIRMED)

    assert len(assistant.whatsapp.mock.texts_for(PHONE)) == 7
    assert assistant.repository.get_customer("pizzaria", PHONE).total_orders == 1
    metrics = turn_metrics.snapshot_per_tenant()["pizzaria"]
    assert metrics["turnos"] == 7
    assert metrics["pedidos_criados"] == 1


def test_declining_upsell_with_nothing_else_keeps_the_cart():
    assistant = _assistant()
    runtime = _runtime()
    assistant.repository.get_or_create("pizzaria", PHONE)

    _turn(assistant, runtime, "quero 2 pizzas calabresa e 1 coca")
    declined = _turn(assistant, runtime, "não quero mais nada")

    conversation = assistant.repository.get(KEY)
    assert declined.action != A.FLOW_CANCELLED
    assert declined.state == S.CONFIRMING_CART
    assert declined.reply == "Seu pedido é para retirada ou delivery?"
    assert [(i.catalog_code, i.quantity) for i in conversation.transaction.items] == [("PZ-CAL", 2), ("BB-COC", 1)]


def test_changes_after_order_is_registered_are_not_confirmed():
    provider = MockOrderProvider()
    assistant = _assistant(provider=provider)
    runtime = _runtime()
    assistant.repository.get_or_create("pizzaria", PHONE)
    for text in (
        "quero 2 pizzas calabresa e 1 coca",
        "só isso",
        "entrega na Rua das Flores, 123, bairro Centro",
        "pix",
        "sim",
    ):
        _turn(assistant, runtime, text)
    conversation = assistant.repository.get(KEY)
    order_id = conversation.transaction.order_id
    assert conversation.state == S.WAITING_PAYMENT

    cancelled = _turn(assistant, runtime, "cancela")
    assert cancelled.state == S.ADDING_ITEM
    _turn(assistant, runtime, "quero mais 1 pudim")
    _turn(assistant, runtime, "não, só isso")
    outcome = _turn(assistant, runtime, "confirmo")

    assert (outcome.state, outcome.action) == (S.WAITING_PAYMENT, A.ORDER_CHANGE_NOT_SENT)
    assert "não foi enviada" in outcome.reply
    assert "registrado!" not in outcome.reply
    assert conversation.transaction.order_id == order_id
    assert [(i.catalog_code, i.quantity) for i in conversation.transaction.items] == [("PZ-CAL", 2), ("BB-COC", 1)]
    assert conversation.transaction.total_amount_cents == 11130
    assert len(provider.created) == 1


def test_repeated_grouped_text_is_processed_once():
    turn_metrics.reset()
    assistant = _assistant()
    runtime = _runtime()
    assistant.repository.get_or_create("pizzaria", PHONE)

    first = _turn(assistant, runtime, "oi")
    second = _turn(assistant, runtime, "  OI ")

    assert first.status == "processed"
    assert second.status == "duplicate"
    assert len(assistant.whatsapp.mock.sent) == 1
    assert assistant.repository.get(KEY).last_processed_hash == text_hash(PHONE, "oi")
    assert turn_metrics.snapshot_per_tenant()["pizzaria"]["duplicados"] == 1


def test_missing_conversation_is_reported():
    assistant = _assistant()

    assert _turn(assistant, _runtime(), "oi").status == "missing"


def test_handoff_notifies_only_once():
    turn_metrics.reset()
    assistant = _assistant()
    runtime = _runtime()
    assistant.repository.get_or_create("pizzaria", PHONE)

    handoff = _turn(assistant, runtime, "quero falar com um atendente")
    assert handoff.state == S.HUMAN_HANDOFF
    assert handoff.reply == HANDOFF_TEXT

    silent = _turn(assistant, runtime, "alguém aí?")
    assert silent.state == S.HUMAN_HANDOFF
    assert silent.reply is None
    assert silent.sent is False

    assert assistant.whatsapp.mock.texts_for(PHONE) == [HANDOFF_TEXT]
    assert turn_metrics.snapshot_per_tenant()["pizzaria"]["transferencias_humano"] == 1

    released = assistant.release_handoff("pizzaria", PHONE)
    assert released.state == S.INIT


def test_pipeline_error_restores_conversation_and_apologizes():
    turn_metrics.reset()
    assistant = _assistant(catalog_source=_BrokenCatalogSource())
    runtime = _runtime()
    assistant.repository.get_or_create("pizzaria", PHONE)

    outcome = _turn(assistant, runtime, "quero uma pizza calabresa")

    conversation = assistant.repository.get(KEY)
    assert outcome.status == "error"
    assert outcome.reply == PIPELINE_ERROR_TEXT
    assert conversation.state == S.INIT
    assert conversation.consecutive_failures == 1
    assert conversation.last_processed_hash == ""
    assert [m.role for m in conversation.messages] == ["user", "assistant"]
    assert assistant.whatsapp.mock.texts_for(PHONE) == [PIPELINE_ERROR_TEXT]
    assert turn_metrics.snapshot_per_tenant()["pizzaria"]["falhas"] == 1


def _inbound(message_id="MSG-001", text="oi") -> InboundMessage:
    return InboundMessage(message_id=message_id, phone=PHONE, text=text, contact_name="João")


def test_handle_inbound_queues_and_processes_grouped_text():
    assistant = _assistant()
    runtime = _runtime(buffer_window_ms=0)

    async def scenario():
        first = assistant.handle_inbound(_inbound(), runtime)
        again = assistant.handle_inbound(_inbound(), runtime)
        await assistant.buffer.drain()
        return first, again

    first, again = asyncio.run(scenario())

    assert first == {"status": "queued", "conversation_id": KEY}
    assert again == {"status": "duplicate"}
    conversation = assistant.repository.get(KEY)
    assert conversation.contact_name == "João"
    assert conversation.state == S.ADDING_ITEM
    assert len(assistant.whatsapp.mock.texts_for(PHONE)) == 1


def test_handle_inbound_respects_contact_control():
    assistant = _assistant()
    runtime = _runtime()

    assert assistant.handle_inbound(_inbound(text="   "), runtime) == {"status": "ignored"}

    assistant.repository.set_contact_control("pizzaria", PHONE, blocked=True)
    assert assistant.handle_inbound(_inbound("MSG-002"), runtime) == {"status": "blocked"}
    assert assistant.repository.get(KEY) is None

    assistant.repository.set_contact_control("pizzaria", PHONE, blocked=False, paused=True)
    paused = assistant.handle_inbound(_inbound("MSG-003", "oi, tudo bem?"), runtime)
    assert paused["status"] == "paused"
    conversation = assistant.repository.get(KEY)
    assert conversation.messages[-1].metadata == {"paused": True}
    assert assistant.buffer.pending_chunks(KEY) == []


def test_cart_expiration_timer_resets_open_cart():
    assistant = _assistant()
    runtime = _runtime()
    conversation = assistant.repository.get_or_create("pizzaria", PHONE)
    conversation.state = S.ADDING_ITEM
    conversation.transaction = Transaction(items=[CartItem(name="Pizza Calabresa", quantity=1)])
    assistant._runtimes[KEY] = runtime

    asyncio.run(assistant._on_timer(KEY, A.CART_EXPIRED))

    assert conversation.state == S.INIT
    assert conversation.transaction.items == []
    assert assistant.whatsapp.mock.texts_for(PHONE)[-1].startswith("Como não tivemos retorno")


def test_followup_nudge_asks_next_field_and_ignores_closed_flows():
    assistant = _assistant()
    runtime = _runtime()
    conversation = assistant.repository.get_or_create("pizzaria", PHONE)
    conversation.state = S.ADDING_ITEM
    assistant._runtimes[KEY] = runtime

    asyncio.run(assistant._on_timer(KEY, A.FOLLOWUP_NUDGE))
    assert assistant.whatsapp.mock.texts_for(PHONE)[-1].startswith("Ainda está por aí?")

    conversation.state = S.CONFIRMED
    asyncio.run(assistant._on_timer(KEY, A.FOLLOWUP_NUDGE))
    assert len(assistant.whatsapp.mock.sent) == 1


def test_state_export_and_operator_actions():
    assistant = _assistant()
    assistant.settings.update("pizzaria", {"greeting_message": "Bem-vindo!"})
    assistant.repository.get_or_create("pizzaria", PHONE)

    snapshot = assistant.export_state()
    restored = _assistant()

    assert restored.load_state(snapshot) == 1
    assert restored.settings.get("pizzaria")["greeting_message"] == "Bem-vindo!"
    assert restored.delete_conversation("pizzaria", PHONE) is True
    assert restored.clear_customer_and_session("pizzaria", PHONE) is False
    assert assistant.clear_customer_and_session("pizzaria", PHONE) is True
