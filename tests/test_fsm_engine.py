from atendimento.ai.schema import Classification, Intent
from atendimento.fsm.actions import ActionType
from atendimento.fsm.engine import TurnInput, orchestrate, state_for_field
from atendimento.fsm.states import VALID_TRANSITIONS, ConversationState, coerce_state, is_valid_transition
from atendimento.schemas.conversation import (
    MODE_TAKEOUT,
    PAYMENT_CASH,
    PAYMENT_PIX,
    CartItem,
    Conversation,
    CustomerProfile,
    Transaction,
)
from atendimento.schemas.extraction import Correction, PartialUpdate

S = ConversationState
A = ActionType
TODAY = "2026-10-17"


def _conversation(state=S.INIT, **overrides) -> Conversation:
    conversation = Conversation(id="pizzaria:5511999990000", tenant_id="pizzaria", phone="5511999990000", state=state)
    for name, value in overrides.items():
        setattr(conversation, name, value)
    return conversation


def _turn(text, intent=Intent.MANAGE_ORDER, confidence=0.8, **kwargs) -> TurnInput:
    return TurnInput(
        classification=Classification(intent=intent, confidence=confidence),
        raw_text=text,
        today=TODAY,
        **kwargs,
    )


def _ready_transaction(payment=PAYMENT_PIX) -> Transaction:
    return Transaction(
        items=[CartItem(name="Pizza Calabresa", quantity=1, catalog_code="PZ-CAL", unit_price_cents=4990)],
        mode=MODE_TAKEOUT,
        payment=payment,
        total_amount_cents=4990,
    )


def test_transition_table():
    assert is_valid_transition("INIT", "MENU") is True
    assert is_valid_transition("FINALIZING", "FINALIZING") is True
    assert is_valid_transition("HUMAN_HANDOFF", "FINALIZING") is False
    assert is_valid_transition("CONFIRMED", "ADDING_ITEM") is False
    assert is_valid_transition("ESTADO_LEGADO", "CONFIRMED") is True
    assert is_valid_transition("INIT", "DESCONHECIDO") is False
    assert coerce_state("xyz") == S.INIT
    assert coerce_state("MENU") == S.MENU


MATRIX_TEXTS = ("oi", "quero 2 pizzas calabresa", "só isso", "sim", "não", "cancela", "paguei", "qual o horário?", "pix")
MATRIX_INTENTS = (Intent.MANAGE_ORDER, Intent.GREETING, Intent.CANCEL, Intent.SPAM, Intent.HUMAN, Intent.PAYMENT)


def test_orchestrator_only_returns_allowed_transitions():
    for state in S:
        for text in MATRIX_TEXTS:
            for intent in MATRIX_INTENTS:
                for ready in (False, True):
                    conversation = _conversation(state)
                    if ready:
                        conversation.transaction = _ready_transaction()
                        conversation.items_phase_complete = True
                        conversation.upsell_done = True

                    next_state = orchestrate(conversation, _turn(text, intent=intent)).next_state

                    assert next_state == state or next_state in VALID_TRANSITIONS[state], (state, text, intent, ready)


def test_state_for_field():
    assert state_for_field("items") == S.ADDING_ITEM
    assert state_for_field("mode") == S.CONFIRMING_CART
    assert state_for_field("address.neighborhood") == S.COLLECTING_ADDRESS
    assert state_for_field("payment") == S.COLLECTING_PAYMENT
    assert state_for_field("notes", S.COLLECTING_PAYMENT) == S.COLLECTING_PAYMENT


def test_first_greeting_of_the_day_welcomes_and_asks_for_items():
    conversation = _conversation()

    result = orchestrate(conversation, _turn("oi", intent=Intent.GREETING))

    assert result.next_state == S.ADDING_ITEM
    assert result.action == A.WELCOME
    assert result.target_field == "items"
    assert conversation.last_greeting_date == TODAY

    again = orchestrate(conversation, _turn("oi", intent=Intent.GREETING))
    assert again.action == A.ASK_MISSING_FIELDS


def test_handoff_triggers():
    assert orchestrate(_conversation(), _turn("oi", intent=Intent.HUMAN)).next_state == S.HUMAN_HANDOFF
    assert orchestrate(_conversation(), _turn("oi", confidence=0.2)).action == A.HUMAN_HANDOFF
    assert orchestrate(_conversation(consecutive_failures=3), _turn("oi")).action == A.HUMAN_HANDOFF
    assert orchestrate(_conversation(), _turn("que absurdo isso")).action == A.HUMAN_HANDOFF


def test_human_handoff_is_sticky():
    result = orchestrate(_conversation(S.HUMAN_HANDOFF), _turn("quero uma pizza", intent=Intent.NEW_ORDER))

    assert result.next_state == S.HUMAN_HANDOFF
    assert result.action == A.HUMAN_HANDOFF


def test_closed_conversation_restarts_with_welcome():
    conversation = _conversation(S.CLOSED, transaction=_ready_transaction())

    result = orchestrate(conversation, _turn("oi", intent=Intent.GREETING))

    assert result.next_state == S.INIT
    assert result.action == A.WELCOME
    assert conversation.transaction.items == []


def test_spam_ends_conversation():
    result = orchestrate(_conversation(), _turn("ganhe dinheiro", intent=Intent.SPAM))

    assert result.next_state == S.CLOSED
    assert result.action == A.END_CONVERSATION


def test_cancel_resets_the_flow():
    conversation = _conversation(S.ADDING_ITEM, transaction=_ready_transaction())

    result = orchestrate(conversation, _turn("quero cancelar o pedido"))

    assert result.next_state == S.INIT
    assert result.action == A.FLOW_CANCELLED
    assert conversation.transaction.items == []


def test_upsell_is_offered_once_for_new_cart():
    conversation = _conversation(S.ADDING_ITEM, transaction=_ready_transaction())
    conversation.transaction.mode = ""

    result = orchestrate(conversation, _turn("quero uma pizza calabresa", changed=frozenset({"items"})))

    assert result.action == A.UPSELL_SUGGEST
    assert result.next_state == S.ADDING_ITEM
    assert conversation.upsell_done is True


def test_finish_closes_items_phase_and_asks_next_field():
    conversation = _conversation(S.ADDING_ITEM, transaction=_ready_transaction(payment=""), upsell_done=True)
    conversation.transaction.mode = ""

    result = orchestrate(conversation, _turn("só isso"))

    assert conversation.items_phase_complete is True
    assert result.next_state == S.CONFIRMING_CART
    assert result.action == A.ASK_MISSING_FIELDS
    assert result.missing == ("mode", "payment")


def test_question_mid_flow_answers_and_resumes():
    conversation = _conversation(
        S.COLLECTING_PAYMENT,
        transaction=_ready_transaction(payment=""),
        upsell_done=True,
        items_phase_complete=True,
    )

    result = orchestrate(conversation, _turn("vocês aceitam vale?"))

    assert result.action == A.ANSWER_AND_RESUME
    assert result.target_field == "payment"


def test_complete_cart_goes_to_review():
    conversation = _conversation(
        S.COLLECTING_PAYMENT,
        transaction=_ready_transaction(),
        upsell_done=True,
        items_phase_complete=True,
    )

    result = orchestrate(conversation, _turn("pix", changed=frozenset({"payment"})))

    assert result.next_state == S.FINALIZING
    assert result.action == A.ORDER_REVIEW


def test_finalizing_yes_commits_with_payment_specific_action():
    pix = _conversation(S.FINALIZING, transaction=_ready_transaction(), items_phase_complete=True)
    result = orchestrate(pix, _turn("sim"))
    assert result.next_state == S.WAITING_PAYMENT
    assert result.action == A.CREATE_ORDER_AND_WAIT_PAYMENT
    assert result.is_commit is True
    assert pix.confirmed["payment"] is True

    cash = _conversation(S.FINALIZING, transaction=_ready_transaction(PAYMENT_CASH), items_phase_complete=True)
    result = orchestrate(cash, _turn("sim"))
    assert result.next_state == S.CONFIRMED
    assert result.action == A.CREATE_ORDER_AND_CONFIRM


def test_finalizing_no_requests_adjustments():
    conversation = _conversation(S.FINALIZING, transaction=_ready_transaction(), items_phase_complete=True)

    result = orchestrate(conversation, _turn("não"))

    assert result.next_state == S.FINALIZING
    assert result.action == A.REQUEST_ADJUSTMENTS


def test_finalizing_applies_quantity_correction():
    transaction = _ready_transaction()
    transaction.items[0].quantity = 3
    conversation = _conversation(S.FINALIZING, transaction=transaction, items_phase_complete=True)

    result = orchestrate(conversation, _turn("só uma pizza", correction=Correction(new_qty=1, target="pizza")))

    assert result.action == A.CORRECTION_APPLIED
    assert result.details["lines"] == ["Pizza Calabresa"]
    assert conversation.transaction.items[0].quantity == 1
    assert conversation.transaction.total_amount_cents == 4990


def test_waiting_payment_branches():
    paid = orchestrate(_conversation(S.WAITING_PAYMENT), _turn("paguei", intent=Intent.PAYMENT))
    assert (paid.next_state, paid.action) == (S.CONFIRMED, A.PAYMENT_CONFIRMED)

    cancelled = orchestrate(_conversation(S.WAITING_PAYMENT), _turn("quero cancelar o pedido"))
    assert (cancelled.next_state, cancelled.action) == (S.ADDING_ITEM, A.REQUEST_ADJUSTMENTS)
    assert cancelled.missing == ("items",)

    reminder = orchestrate(_conversation(S.WAITING_PAYMENT), _turn("demora muito?"))
    assert (reminder.next_state, reminder.action) == (S.WAITING_PAYMENT, A.PAYMENT_REMINDER)


def test_waiting_payment_switching_payment_returns_to_review():
    conversation = _conversation(S.WAITING_PAYMENT, transaction=_ready_transaction(PAYMENT_CASH))

    result = orchestrate(
        conversation,
        _turn("dinheiro", update=PartialUpdate(payment=PAYMENT_CASH), changed=frozenset({"payment"})),
    )

    assert result.next_state == S.FINALIZING
    assert result.action == A.ORDER_REVIEW


def test_confirmed_blocks_new_orders_and_offers_support():
    blocked = orchestrate(_conversation(S.CONFIRMED), _turn("quero outra pizza", intent=Intent.NEW_ORDER))
    assert blocked.action == A.BLOCK_NEW_ORDER_UNTIL_FINISH

    support = orchestrate(_conversation(S.CONFIRMED), _turn("obrigado", intent=Intent.QUESTION))
    assert support.action == A.POST_CONFIRMATION_SUPPORT


def test_pending_field_confirmation_yes_and_no():
    conversation = _conversation(
        S.COLLECTING_PAYMENT,
        transaction=_ready_transaction(),
        items_phase_complete=True,
        upsell_done=True,
        pending_field_confirmation="payment",
    )
    result = orchestrate(conversation, _turn("sim"))
    assert conversation.confirmed["payment"] is True
    assert result.action == A.ORDER_REVIEW

    conversation = _conversation(
        S.COLLECTING_PAYMENT,
        transaction=_ready_transaction(),
        items_phase_complete=True,
        pending_field_confirmation="payment",
    )
    result = orchestrate(conversation, _turn("não"))
    assert conversation.transaction.payment == ""
    assert result.action == A.ASK_MISSING_FIELDS
    assert result.target_field == "payment"


def test_returning_customer_gets_repeat_offer_and_accepts_it():
    snapshot = _ready_transaction(PAYMENT_CASH)
    snapshot.order_id = "pedido-antigo"
    customer = CustomerProfile(tenant_id="pizzaria", phone="5511999990000", last_order_snapshot=snapshot)
    conversation = _conversation()

    offer = orchestrate(conversation, _turn("oi", intent=Intent.GREETING, customer=customer))
    assert offer.action == A.REPEAT_ORDER_OFFER
    assert conversation.awaiting_repeat_choice is True
    assert conversation.repeat_preview.order_id is None

    accepted = orchestrate(conversation, _turn("sim", customer=customer))
    assert accepted.next_state == S.FINALIZING
    assert accepted.action == A.ORDER_REVIEW
    assert conversation.transaction.items[0].catalog_code == "PZ-CAL"
    assert conversation.transaction.order_id is None


def test_menu_request_shows_menu():
    result = orchestrate(_conversation(), _turn("me manda o cardápio", intent=Intent.MENU))

    assert result.next_state == S.MENU
    assert result.action == A.SHOW_MENU
