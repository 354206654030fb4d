from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from atendimento.fsm.states import ConversationState


class ActionType(str, Enum):
    WELCOME = "WELCOME"
    SHOW_MENU = "SHOW_MENU"
    ASK_MISSING_FIELDS = "ASK_MISSING_FIELDS"
    ASK_FIELD_CONFIRMATION = "ASK_FIELD_CONFIRMATION"
    ANSWER_AND_RESUME = "ANSWER_AND_RESUME"
    ANSWER_AND_RESUME_CONFIRM = "ANSWER_AND_RESUME_CONFIRM"
    UPSELL_SUGGEST = "UPSELL_SUGGEST"
    ORDER_REVIEW = "ORDER_REVIEW"
    CORRECTION_APPLIED = "CORRECTION_APPLIED"
    REQUEST_ADJUSTMENTS = "REQUEST_ADJUSTMENTS"
    REPEAT_ORDER_OFFER = "REPEAT_ORDER_OFFER"
    CREATE_ORDER_AND_WAIT_PAYMENT = "CREATE_ORDER_AND_WAIT_PAYMENT"
    CREATE_ORDER_AND_CONFIRM = "CREATE_ORDER_AND_CONFIRM"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    PAYMENT_REMINDER = "PAYMENT_REMINDER"
    FLOW_CANCELLED = "FLOW_CANCELLED"
    BLOCK_NEW_ORDER_UNTIL_FINISH = "BLOCK_NEW_ORDER_UNTIL_FINISH"
    POST_CONFIRMATION_SUPPORT = "POST_CONFIRMATION_SUPPORT"
    HUMAN_HANDOFF = "HUMAN_HANDOFF"
    END_CONVERSATION = "END_CONVERSATION"
    CLARIFY = "CLARIFY"
    # Resultados do envio do pedido
    ORDER_TOTAL_CORRECTED = "ORDER_TOTAL_CORRECTED"
    ORDER_VALIDATION_FAILED = "ORDER_VALIDATION_FAILED"
    ORDER_ITEMS_NOT_FOUND = "ORDER_ITEMS_NOT_FOUND"
    ORDER_PROVIDER_UNAVAILABLE = "ORDER_PROVIDER_UNAVAILABLE"
    ORDER_CHANGE_NOT_SENT = "ORDER_CHANGE_NOT_SENT"
    # Timers
    FOLLOWUP_NUDGE = "FOLLOWUP_NUDGE"
    CART_EXPIRED = "CART_EXPIRED"
    PIPELINE_ERROR = "PIPELINE_ERROR"


COMMIT_ACTIONS = frozenset(
    {ActionType.CREATE_ORDER_AND_WAIT_PAYMENT, ActionType.CREATE_ORDER_AND_CONFIRM}
)


@dataclass(frozen=True)
class OrchestratorResult:
    next_state: ConversationState
    action: ActionType
    missing: tuple[str, ...] = ()
    target_field: str | None = None
    details: dict = field(default_factory=dict)

    @property
    def is_commit(self) -> bool:
        return self.action in COMMIT_ACTIONS
