from __future__ import annotations

from contextvars import ContextVar


_TENANT_ID_CTX: ContextVar[str | None] = ContextVar("tenant_id", default=None)
_CONVERSATION_ID_CTX: ContextVar[str | None] = ContextVar("conversation_id", default=None)
_TURN_ID_CTX: ContextVar[str | None] = ContextVar("turn_id", default=None)


def set_request_context(
    *, tenant_id: str | None = None, conversation_id: str | None = None, turn_id: str | None = None
) -> None:
    if tenant_id is not None:
        _TENANT_ID_CTX.set(tenant_id)
    if conversation_id is not None:
        _CONVERSATION_ID_CTX.set(conversation_id)
    if turn_id is not None:
        _TURN_ID_CTX.set(turn_id)


def get_tenant_id() -> str | None:
    return _TENANT_ID_CTX.get()


def get_conversation_id() -> str | None:
    return _CONVERSATION_ID_CTX.get()


def get_turn_id() -> str | None:
    return _TURN_ID_CTX.get()


def clear_request_context() -> None:
    _TENANT_ID_CTX.set(None)
    _CONVERSATION_ID_CTX.set(None)
    _TURN_ID_CTX.set(None)
