from __future__ import annotations

from enum import Enum


class ConversationState(str, Enum):
    INIT = "INIT"
    MENU = "MENU"
    ADDING_ITEM = "ADDING_ITEM"
    CONFIRMING_CART = "CONFIRMING_CART"
    COLLECTING_ADDRESS = "COLLECTING_ADDRESS"
    COLLECTING_PAYMENT = "COLLECTING_PAYMENT"
    FINALIZING = "FINALIZING"
    WAITING_PAYMENT = "WAITING_PAYMENT"
    CONFIRMED = "CONFIRMED"
    HUMAN_HANDOFF = "HUMAN_HANDOFF"
    CLOSED = "CLOSED"


S = ConversationState

_COLLECTION = {S.ADDING_ITEM, S.CONFIRMING_CART, S.COLLECTING_ADDRESS, S.COLLECTING_PAYMENT}
_EXITS = {S.INIT, S.HUMAN_HANDOFF, S.CLOSED}

# Auto-transições são sempre aceitas e não precisam constar aqui.
VALID_TRANSITIONS: dict[ConversationState, frozenset[ConversationState]] = {
    S.INIT: frozenset({S.MENU, S.FINALIZING} | _COLLECTION | _EXITS),
    S.MENU: frozenset({S.FINALIZING} | _COLLECTION | _EXITS),
    S.ADDING_ITEM: frozenset({S.MENU, S.FINALIZING} | _COLLECTION | _EXITS),
    S.CONFIRMING_CART: frozenset({S.MENU, S.FINALIZING} | _COLLECTION | _EXITS),
    S.COLLECTING_ADDRESS: frozenset({S.MENU, S.FINALIZING} | _COLLECTION | _EXITS),
    S.COLLECTING_PAYMENT: frozenset({S.MENU, S.FINALIZING} | _COLLECTION | _EXITS),
    S.FINALIZING: frozenset({S.WAITING_PAYMENT, S.CONFIRMED, S.MENU} | _COLLECTION | _EXITS),
    S.WAITING_PAYMENT: frozenset({S.CONFIRMED, S.FINALIZING, S.ADDING_ITEM, S.COLLECTING_PAYMENT} | _EXITS),
    S.CONFIRMED: frozenset({S.INIT, S.HUMAN_HANDOFF, S.CLOSED}),
    S.HUMAN_HANDOFF: frozenset({S.INIT}),
    S.CLOSED: frozenset({S.INIT, S.HUMAN_HANDOFF}),
}

CART_OPEN_STATES = frozenset({S.MENU, S.FINALIZING} | _COLLECTION)


def is_valid_transition(current: str, target: str) -> bool:
    """Valida uma transição contra a tabela de adjacência.

    Estados fora da tabela (legados ou renomeados) são tratados de forma
    permissiva: qualquer destino é aceito a partir deles.
    """
    if current == target:
        return True
    try:
        source = ConversationState(current)
    except ValueError:
        return True
    allowed = VALID_TRANSITIONS.get(source)
    if allowed is None:
        return True
    try:
        return ConversationState(target) in allowed
    except ValueError:
        return False


def coerce_state(value: str | None) -> ConversationState:
    try:
        return ConversationState(value or S.INIT.value)
    except ValueError:
        return S.INIT
