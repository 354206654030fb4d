from __future__ import annotations

from dataclasses import dataclass, field

from atendimento.ai.schema import Classification, Intent
from atendimento.fsm.actions import ActionType, OrchestratorResult
from atendimento.fsm.states import ConversationState
from atendimento.schemas.conversation import (
    ADDRESS_FIELDS,
    PAYMENT_PIX,
    Conversation,
    CustomerProfile,
)
from atendimento.schemas.extraction import Correction, PartialUpdate
from atendimento.services.field_extraction import MessageSignals, detect_signals
from atendimento.services.transaction_merge import (
    apply_correction,
    clear_field,
    missing_fields,
    recalculate_total,
)

S = ConversationState
A = ActionType

_FLOW_STATES = frozenset(
    {
        S.INIT,
        S.MENU,
        S.ADDING_ITEM,
        S.CONFIRMING_CART,
        S.COLLECTING_ADDRESS,
        S.COLLECTING_PAYMENT,
        S.FINALIZING,
    }
)
_COLLECTION_STATES = frozenset({S.ADDING_ITEM, S.CONFIRMING_CART, S.COLLECTING_ADDRESS, S.COLLECTING_PAYMENT})


@dataclass(frozen=True)
class TurnInput:
    classification: Classification
    raw_text: str
    today: str
    update: PartialUpdate = field(default_factory=PartialUpdate)
    changed: frozenset[str] = frozenset()
    correction: Correction | None = None
    customer: CustomerProfile | None = None
    require_address: bool = True
    handoff_failure_threshold: int = 3
    handoff_min_confidence: float = 0.45


def _result(
    next_state: ConversationState,
    action: ActionType,
    missing: list[str] | tuple[str, ...] = (),
    target_field: str | None = None,
    **details,
) -> OrchestratorResult:
    return OrchestratorResult(
        next_state=next_state,
        action=action,
        missing=tuple(missing),
        target_field=target_field,
        details=details,
    )


def state_for_field(field_name: str, current: ConversationState = S.ADDING_ITEM) -> ConversationState:
    if field_name == "items":
        return S.ADDING_ITEM
    if field_name == "mode":
        return S.CONFIRMING_CART
    if field_name.startswith("address."):
        return S.COLLECTING_ADDRESS
    if field_name == "payment":
        return S.COLLECTING_PAYMENT
    return current if current in _COLLECTION_STATES else S.ADDING_ITEM


def _needs_handoff(conversation: Conversation, turn: TurnInput, signals: MessageSignals) -> bool:
    classification = turn.classification
    return (
        classification.handoff
        or classification.intent == Intent.HUMAN
        or classification.confidence < turn.handoff_min_confidence
        or signals.frustration
        or conversation.consecutive_failures >= turn.handoff_failure_threshold
    )


def _mark_all_confirmed(conversation: Conversation) -> None:
    transaction = conversation.transaction
    conversation.confirmed["items"] = True
    for name in ("mode", "payment", "customer_name", "notes"):
        if getattr(transaction, name):
            conversation.confirmed[name] = True
    for key in ADDRESS_FIELDS:
        if getattr(transaction.address, key):
            conversation.confirmed[f"address.{key}"] = True


def _confirmed_state(turn: TurnInput) -> OrchestratorResult:
    if turn.classification.intent in {Intent.NEW_ORDER, Intent.REPEAT_ORDER} or turn.update.items:
        return _result(S.CONFIRMED, A.BLOCK_NEW_ORDER_UNTIL_FINISH)
    return _result(S.CONFIRMED, A.POST_CONFIRMATION_SUPPORT)


def _waiting_payment(
    conversation: Conversation, turn: TurnInput, signals: MessageSignals, cancel: bool
) -> OrchestratorResult:
    transaction = conversation.transaction
    if signals.payment_confirmed or signals.yes:
        return _result(S.CONFIRMED, A.PAYMENT_CONFIRMED)
    if cancel:
        conversation.items_phase_complete = False
        conversation.pending_field_confirmation = None
        return _result(S.ADDING_ITEM, A.REQUEST_ADJUSTMENTS, ["items"])
    if "payment" in turn.changed:
        if conversation.pending_field_confirmation == "payment":
            conversation.pending_field_confirmation = None
        conversation.confirmed["payment"] = True
        transaction.total_amount_cents = recalculate_total(transaction)
        return _result(S.FINALIZING, A.ORDER_REVIEW)
    if signals.alternate_payment:
        clear_field(transaction, "payment")
        conversation.confirmed["payment"] = False
        return _result(S.COLLECTING_PAYMENT, A.ASK_MISSING_FIELDS, ["payment"], "payment")
    return _result(S.WAITING_PAYMENT, A.PAYMENT_REMINDER)


def _finalizing(
    conversation: Conversation, turn: TurnInput, signals: MessageSignals
) -> OrchestratorResult | None:
    transaction = conversation.transaction
    if turn.correction is not None and transaction.items:
        touched = apply_correction(transaction, turn.correction)
        conversation.confirmed["items"] = False
        return _result(S.FINALIZING, A.CORRECTION_APPLIED, lines=touched)
    if turn.changed:
        return None
    if signals.yes:
        missing = missing_fields(
            transaction,
            items_phase_complete=conversation.items_phase_complete,
            require_address=turn.require_address,
        )
        if missing:
            return None
        conversation.pending_field_confirmation = None
        _mark_all_confirmed(conversation)
        if transaction.payment == PAYMENT_PIX:
            return _result(S.WAITING_PAYMENT, A.CREATE_ORDER_AND_WAIT_PAYMENT)
        return _result(S.CONFIRMED, A.CREATE_ORDER_AND_CONFIRM)
    if signals.no:
        return _result(S.FINALIZING, A.REQUEST_ADJUSTMENTS)
    if signals.question:
        return _result(S.FINALIZING, A.ANSWER_AND_RESUME)
    return _result(S.FINALIZING, A.ORDER_REVIEW)


def _offer_repeat(
    conversation: Conversation, turn: TurnInput, signals: MessageSignals
) -> OrchestratorResult | None:
    customer = turn.customer
    if conversation.state != S.INIT or customer is None:
        return None
    snapshot = customer.last_order_snapshot
    if snapshot is None or not snapshot.items or conversation.transaction.items or turn.update.items:
        return None
    wants_repeat = signals.repeat_request or turn.classification.intent == Intent.REPEAT_ORDER
    greeted = signals.greeting or turn.classification.intent == Intent.GREETING
    if not wants_repeat and not (greeted and conversation.last_greeting_date != turn.today):
        return None

    preview = snapshot.model_copy(deep=True)
    preview.order_id = None
    conversation.repeat_preview = preview
    conversation.awaiting_repeat_choice = True
    if greeted:
        conversation.last_greeting_date = turn.today
    return _result(S.INIT, A.REPEAT_ORDER_OFFER)


def _repeat_choice(
    conversation: Conversation, turn: TurnInput, signals: MessageSignals
) -> OrchestratorResult | None:
    preview = conversation.repeat_preview
    conversation.awaiting_repeat_choice = False
    conversation.repeat_preview = None

    if preview is not None and (signals.yes or signals.repeat_request):
        transaction = conversation.transaction
        transaction.items = [item.model_copy() for item in preview.items]
        transaction.mode = preview.mode
        transaction.address = preview.address.model_copy()
        transaction.payment = preview.payment
        transaction.customer_name = transaction.customer_name or preview.customer_name
        transaction.delivery_fee_cents = preview.delivery_fee_cents
        transaction.order_id = None
        transaction.total_amount_cents = recalculate_total(transaction)
        conversation.items_phase_complete = True
        conversation.upsell_done = True
        _mark_all_confirmed(conversation)
        return _collect(conversation, turn, signals)
    if signals.no:
        return _result(S.ADDING_ITEM, A.ASK_MISSING_FIELDS, ["items"], "items")
    return None


def _pending_confirmation(
    conversation: Conversation, turn: TurnInput, signals: MessageSignals
) -> OrchestratorResult | None:
    field_name = conversation.pending_field_confirmation
    if not field_name:
        return None
    current = conversation.state
    if signals.yes:
        conversation.confirmed[field_name] = True
        conversation.pending_field_confirmation = None
        return None
    if signals.no:
        clear_field(conversation.transaction, field_name)
        conversation.confirmed[field_name] = False
        conversation.pending_field_confirmation = None
        return _result(state_for_field(field_name, current), A.ASK_MISSING_FIELDS, [field_name], field_name)
    action = A.ASK_FIELD_CONFIRMATION
    if signals.question and field_name not in turn.changed:
        action = A.ANSWER_AND_RESUME_CONFIRM
    return _result(state_for_field(field_name, current), action, [field_name], field_name)


def _collect(conversation: Conversation, turn: TurnInput, signals: MessageSignals) -> OrchestratorResult:
    transaction = conversation.transaction

    if transaction.items and not conversation.items_phase_complete:
        declined_upsell = conversation.upsell_done and (signals.no or turn.update.has_logistics())
        if signals.finish or declined_upsell:
            conversation.items_phase_complete = True
            conversation.confirmed["items"] = True

    if (
        transaction.items
        and not conversation.items_phase_complete
        and not conversation.upsell_done
        and not (signals.yes or signals.no or signals.question or signals.finish)
    ):
        conversation.upsell_done = True
        return _result(S.ADDING_ITEM, A.UPSELL_SUGGEST, ["items"])

    missing = missing_fields(
        transaction,
        items_phase_complete=conversation.items_phase_complete,
        require_address=turn.require_address,
    )
    if missing:
        first = missing[0]
        action = A.ANSWER_AND_RESUME if signals.question else A.ASK_MISSING_FIELDS
        return _result(state_for_field(first, conversation.state), action, missing, first)

    transaction.total_amount_cents = recalculate_total(transaction)
    return _result(S.FINALIZING, A.ORDER_REVIEW)


def orchestrate(conversation: Conversation, turn: TurnInput) -> OrchestratorResult:
    """Decide próximo estado, ação e campos faltantes para um turno.

    Não faz I/O: só lê os dados do turno e ajusta as flags e o pedido da
    conversa em memória. O estado da conversa não é alterado aqui.
    """
    signals = detect_signals(turn.raw_text)
    intent = turn.classification.intent
    state = conversation.state

    if state == S.HUMAN_HANDOFF:
        return _result(S.HUMAN_HANDOFF, A.HUMAN_HANDOFF)
    if _needs_handoff(conversation, turn, signals):
        return _result(S.HUMAN_HANDOFF, A.HUMAN_HANDOFF)
    if state == S.CLOSED:
        conversation.reset_flow()
        conversation.last_greeting_date = turn.today
        return _result(S.INIT, A.WELCOME, ["items"], "items")
    if intent == Intent.SPAM:
        return _result(S.CLOSED, A.END_CONVERSATION)

    cancel = signals.cancel or intent == Intent.CANCEL
    if state == S.CONFIRMED:
        return _confirmed_state(turn)
    if state == S.WAITING_PAYMENT:
        return _waiting_payment(conversation, turn, signals, cancel)
    if state not in _FLOW_STATES:
        return _result(state, A.CLARIFY)

    if cancel:
        conversation.reset_flow()
        return _result(S.INIT, A.FLOW_CANCELLED)

    if conversation.awaiting_repeat_choice:
        result = _repeat_choice(conversation, turn, signals)
        if result is not None:
            return result

    if state == S.FINALIZING:
        result = _finalizing(conversation, turn, signals)
        if result is not None:
            return result
    elif turn.correction is not None and conversation.transaction.items:
        apply_correction(conversation.transaction, turn.correction)
        conversation.confirmed["items"] = False

    result = _offer_repeat(conversation, turn, signals)
    if result is not None:
        return result

    result = _pending_confirmation(conversation, turn, signals)
    if result is not None:
        return result

    if (signals.menu_request or intent == Intent.MENU) and not turn.update.items:
        return _result(S.MENU, A.SHOW_MENU)

    result = _collect(conversation, turn, signals)

    greeted = signals.greeting or intent == Intent.GREETING
    if greeted and conversation.last_greeting_date != turn.today:
        conversation.last_greeting_date = turn.today
        if result.action == A.ASK_MISSING_FIELDS and not turn.changed:
            return _result(result.next_state, A.WELCOME, result.missing, result.target_field)
    return result
