from datetime import datetime, timedelta, timezone

from atendimento.fsm.states import ConversationState
from atendimento.schemas.conversation import CartItem, Transaction
from atendimento.services.conversations import ConversationRepository, conversation_key

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
PHONE = "5511999990000"


def _repository(**kwargs) -> ConversationRepository:
    options = {
        "conversation_ttl_ms": 60 * 60 * 1000,
        "mid_flow_ttl_ms": 30 * 60 * 1000,
        "waiting_payment_ttl_ms": 15 * 60 * 1000,
        "max_messages": 3,
    }
    options.update(kwargs)
    return ConversationRepository(**options)


def test_get_or_create_returns_same_conversation():
    repository = _repository()

    first = repository.get_or_create("pizzaria", PHONE, NOW, contact_name="João")
    second = repository.get_or_create("pizzaria", PHONE, NOW + timedelta(minutes=1))

    assert first is second
    assert first.id == conversation_key("pizzaria", PHONE) == f"pizzaria:{PHONE}"
    assert first.contact_name == "João"
    assert first.state == ConversationState.INIT


def test_tenants_do_not_share_conversations():
    repository = _repository()

    pizzaria = repository.get_or_create("pizzaria", PHONE, NOW)
    burger = repository.get_or_create("hamburgueria", PHONE, NOW)

    assert pizzaria is not burger
    assert [c.tenant_id for c in repository.list_conversations("hamburgueria")] == ["hamburgueria"]


def test_idle_mid_flow_conversation_rotates_to_init():
    repository = _repository()
    conversation = repository.get_or_create("pizzaria", PHONE, NOW)
    conversation.state = ConversationState.ADDING_ITEM
    conversation.transaction = Transaction(items=[CartItem(name="Pizza", quantity=1)])
    conversation.last_processed_hash = "abc"
    repository.touch(conversation, NOW)

    rotated = repository.get_or_create("pizzaria", PHONE, NOW + timedelta(minutes=31))

    assert rotated.state == ConversationState.INIT
    assert rotated.transaction.items == []
    assert rotated.last_processed_hash == ""


def test_ttl_depends_on_state():
    repository = _repository()

    assert repository.ttl_for(ConversationState.WAITING_PAYMENT) == 15 * 60 * 1000
    assert repository.ttl_for(ConversationState.COLLECTING_PAYMENT) == 30 * 60 * 1000
    assert repository.ttl_for(ConversationState.CONFIRMED) == 60 * 60 * 1000

    conversation = repository.get_or_create("pizzaria", PHONE, NOW)
    conversation.state = ConversationState.CONFIRMED
    repository.touch(conversation, NOW)
    assert repository.get_or_create("pizzaria", PHONE, NOW + timedelta(minutes=40)).state == ConversationState.CONFIRMED


def test_reopen_if_closed_resets_flow():
    repository = _repository()
    conversation = repository.get_or_create("pizzaria", PHONE, NOW)
    conversation.state = ConversationState.CLOSED
    conversation.upsell_done = True

    assert repository.reopen_if_closed(conversation, NOW) is True
    assert conversation.state == ConversationState.INIT
    assert conversation.upsell_done is False
    assert repository.reopen_if_closed(conversation, NOW) is False


def test_append_message_caps_history_but_counts_everything():
    repository = _repository()
    conversation = repository.get_or_create("pizzaria", PHONE, NOW)

    for index in range(5):
        repository.append_message(conversation, "user", f"mensagem {index}")

    assert [m.content for m in conversation.messages] == ["mensagem 2", "mensagem 3", "mensagem 4"]
    assert conversation.message_count == 5


def test_release_handoff_and_delete():
    repository = _repository()
    conversation = repository.get_or_create("pizzaria", PHONE, NOW)
    conversation.state = ConversationState.HUMAN_HANDOFF
    conversation.consecutive_failures = 3

    released = repository.release_handoff("pizzaria", PHONE)

    assert released.state == ConversationState.INIT
    assert released.consecutive_failures == 0
    assert repository.release_handoff("pizzaria", "5511000000000") is None
    assert repository.delete_conversation("pizzaria", PHONE) is True
    assert repository.delete_conversation("pizzaria", PHONE) is False


def test_customer_profile_keeps_recent_context_and_last_order():
    repository = _repository()
    customer = repository.get_customer("pizzaria", PHONE)
    for index in range(12):
        repository.remember_turn(customer, f"turno {index}")
    repository.remember_turn(customer, "   ")
    repository.remember_turn(customer, "x" * 400)

    assert len(customer.recent_context) == 10
    assert customer.recent_context[-1] == "x" * 300

    conversation = repository.get_or_create("pizzaria", PHONE, NOW)
    conversation.transaction = Transaction(customer_name="João", order_id="mock-1")
    repository.record_order(conversation)

    assert customer.total_orders == 1
    assert customer.name == "João"
    assert customer.last_order_snapshot.order_id == "mock-1"
    assert customer.last_order_snapshot is not conversation.transaction


def test_clear_customer_and_session():
    repository = _repository()
    repository.get_or_create("pizzaria", PHONE, NOW)
    repository.get_customer("pizzaria", PHONE)

    assert repository.clear_customer_and_session("pizzaria", PHONE) is True
    assert repository.get("pizzaria:" + PHONE) is None
    assert repository.clear_customer_and_session("pizzaria", PHONE) is False


def test_contact_control_normalizes_phone_and_merges_flags():
    repository = _repository()

    repository.set_contact_control("pizzaria", "(11) 99999-0000", paused=True)
    control = repository.set_contact_control("pizzaria", PHONE, blocked=True)

    assert control.paused is True
    assert control.blocked is True
    assert repository.get_contact_control("pizzaria", "11999990000").blocked is True
    assert repository.get_contact_control("hamburgueria", PHONE).paused is False


def test_snapshot_round_trip_skips_invalid_rows():
    repository = _repository()
    conversation = repository.get_or_create("pizzaria", PHONE, NOW)
    conversation.state = ConversationState.COLLECTING_PAYMENT
    repository.append_message(conversation, "user", "pix")
    repository.get_customer("pizzaria", PHONE).total_orders = 2
    repository.set_contact_control("pizzaria", PHONE, paused=True)

    snapshot = repository.export_snapshot()
    snapshot["conversations"]["quebrada"] = {"id": 1}

    restored = _repository()
    assert restored.load_snapshot(snapshot) == 1
    loaded = restored.get(conversation.id)
    assert loaded.state == ConversationState.COLLECTING_PAYMENT
    assert loaded.messages[0].content == "pix"
    assert restored.get_customer("pizzaria", PHONE).total_orders == 2
    assert restored.get_contact_control("pizzaria", PHONE).paused is True
