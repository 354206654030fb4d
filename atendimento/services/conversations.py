from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from atendimento.core.config import (
    CONVERSATION_TTL_MS,
    MAX_CONVERSATION_MESSAGES,
    MID_FLOW_TTL_MS,
    WAITING_PAYMENT_TTL_MS,
)
from atendimento.fsm.states import CART_OPEN_STATES, ConversationState
from atendimento.schemas.conversation import ChatMessage, Conversation, CustomerProfile, utcnow
from atendimento.services.snapshot_store import InMemoryStateStore, Snapshot, StateStore
from atendimento.whatsapp.base import canonical_phone, only_digits

logger = logging.getLogger(__name__)

RECENT_CONTEXT_LIMIT = 10


class ContactControl(BaseModel):
    paused: bool = False
    blocked: bool = False
    updated_at: datetime = Field(default_factory=utcnow)


def conversation_key(tenant_id: str, phone: str) -> str:
    return f"{tenant_id or 'default'}:{phone}"


def contact_key(tenant_id: str, phone: str) -> str:
    return conversation_key(tenant_id, canonical_phone(phone) or only_digits(phone))


class ConversationRepository:
    """Conversas, perfis de cliente e controle de contato de todos os tenants."""

    def __init__(
        self,
        conversations: StateStore | None = None,
        customers: StateStore | None = None,
        *,
        conversation_ttl_ms: int = CONVERSATION_TTL_MS,
        mid_flow_ttl_ms: int = MID_FLOW_TTL_MS,
        waiting_payment_ttl_ms: int = WAITING_PAYMENT_TTL_MS,
        max_messages: int = MAX_CONVERSATION_MESSAGES,
    ) -> None:
        self.conversations = conversations or InMemoryStateStore()
        self.customers = customers or InMemoryStateStore()
        self.contact_controls: dict[str, ContactControl] = {}
        self.conversation_ttl_ms = conversation_ttl_ms
        self.mid_flow_ttl_ms = mid_flow_ttl_ms
        self.waiting_payment_ttl_ms = waiting_payment_ttl_ms
        self.max_messages = max_messages

    def ttl_for(self, state: ConversationState) -> int:
        if state == ConversationState.WAITING_PAYMENT:
            return self.waiting_payment_ttl_ms
        if state in CART_OPEN_STATES:
            return self.mid_flow_ttl_ms
        return self.conversation_ttl_ms

    def get(self, key: str) -> Conversation | None:
        return self.conversations.get(key)

    def save(self, conversation: Conversation) -> None:
        self.conversations.set(conversation.id, conversation)

    def get_or_create(
        self,
        tenant_id: str,
        phone: str,
        now: datetime | None = None,
        *,
        remote_jid: str | None = None,
        contact_name: str = "",
    ) -> Conversation:
        now = now or utcnow()
        key = conversation_key(tenant_id, phone)
        conversation = self.conversations.get(key)

        if conversation is None:
            conversation = Conversation(
                id=key,
                tenant_id=tenant_id,
                phone=phone,
                remote_jid=remote_jid,
                contact_name=contact_name,
                created_at=now,
                state_updated_at=now,
                last_activity_at=now,
            )
            self.conversations.set(key, conversation)
            logger.info("Nova conversa criada", extra={"phone": phone})
            return conversation

        idle_ms = (now - conversation.last_activity_at).total_seconds() * 1000
        if idle_ms > self.ttl_for(conversation.state):
            self.rotate(conversation, now)

        if remote_jid:
            conversation.remote_jid = remote_jid
        if contact_name:
            conversation.contact_name = contact_name
        return conversation

    def rotate(self, conversation: Conversation, now: datetime | None = None) -> None:
        previous = conversation.state
        conversation.reset_flow()
        conversation.state = ConversationState.INIT
        conversation.state_updated_at = now or utcnow()
        conversation.consecutive_failures = 0
        conversation.last_processed_hash = ""
        conversation.last_processed_at = None
        conversation.handoff_notified = False
        conversation.catalog = []
        logger.info(
            "Conversa expirada por inatividade",
            extra={"previous_state": previous.value, "next_state": ConversationState.INIT.value},
        )

    def reopen_if_closed(self, conversation: Conversation, now: datetime | None = None) -> bool:
        if conversation.state != ConversationState.CLOSED:
            return False
        conversation.reset_flow()
        self.set_state(conversation, ConversationState.INIT, now)
        return True

    def set_state(self, conversation: Conversation, state: ConversationState, now: datetime | None = None) -> None:
        if conversation.state != state:
            conversation.state = state
            conversation.state_updated_at = now or utcnow()

    def touch(self, conversation: Conversation, now: datetime | None = None) -> None:
        conversation.last_activity_at = now or utcnow()

    def append_message(
        self,
        conversation: Conversation,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessage:
        message = ChatMessage(role=role, content=content, metadata=dict(metadata or {}))
        conversation.messages.append(message)
        if len(conversation.messages) > self.max_messages:
            conversation.messages = conversation.messages[-self.max_messages :]
        conversation.message_count += 1
        return message

    def list_conversations(self, tenant_id: str | None = None) -> list[Conversation]:
        items = [self.conversations.get(key) for key in self.conversations.keys()]
        result = [c for c in items if c is not None and (tenant_id is None or c.tenant_id == tenant_id)]
        return sorted(result, key=lambda c: c.last_activity_at, reverse=True)

    def delete_conversation(self, tenant_id: str, phone: str) -> bool:
        key = conversation_key(tenant_id, phone)
        existed = self.conversations.get(key) is not None
        self.conversations.delete(key)
        return existed

    def release_handoff(self, tenant_id: str, phone: str) -> Conversation | None:
        conversation = self.conversations.get(conversation_key(tenant_id, phone))
        if conversation is None:
            return None
        if conversation.state == ConversationState.HUMAN_HANDOFF:
            self.set_state(conversation, ConversationState.INIT)
        conversation.consecutive_failures = 0
        conversation.handoff_notified = False
        return conversation

    # clientes

    def get_customer(self, tenant_id: str, phone: str) -> CustomerProfile:
        key = conversation_key(tenant_id, phone)
        customer = self.customers.get(key)
        if customer is None:
            customer = CustomerProfile(tenant_id=tenant_id, phone=phone)
            self.customers.set(key, customer)
        return customer

    def remember_turn(self, customer: CustomerProfile, text: str) -> None:
        cleaned = (text or "").strip()
        if not cleaned:
            return
        customer.recent_context.append(cleaned[:300])
        customer.recent_context = customer.recent_context[-RECENT_CONTEXT_LIMIT:]
        customer.updated_at = utcnow()

    def record_order(self, conversation: Conversation) -> CustomerProfile:
        customer = self.get_customer(conversation.tenant_id, conversation.phone)
        customer.last_order_snapshot = conversation.transaction.model_copy(deep=True)
        customer.total_orders += 1
        if conversation.transaction.customer_name:
            customer.name = conversation.transaction.customer_name
        customer.updated_at = utcnow()
        return customer

    def clear_customer_and_session(self, tenant_id: str, phone: str) -> bool:
        key = conversation_key(tenant_id, phone)
        existed = self.conversations.get(key) is not None or self.customers.get(key) is not None
        self.conversations.delete(key)
        self.customers.delete(key)
        return existed

    # controle de contato

    def get_contact_control(self, tenant_id: str, phone: str) -> ContactControl:
        return self.contact_controls.get(contact_key(tenant_id, phone)) or ContactControl()

    def set_contact_control(
        self,
        tenant_id: str,
        phone: str,
        *,
        paused: bool | None = None,
        blocked: bool | None = None,
    ) -> ContactControl:
        current = self.get_contact_control(tenant_id, phone)
        updated = ContactControl(
            paused=current.paused if paused is None else paused,
            blocked=current.blocked if blocked is None else blocked,
        )
        self.contact_controls[contact_key(tenant_id, phone)] = updated
        return updated

    # snapshot

    def export_snapshot(self) -> Snapshot:
        conversations = {}
        for key in self.conversations.keys():
            conversation = self.conversations.get(key)
            if conversation is not None:
                conversations[key] = conversation.model_dump(mode="json")
        customers = {}
        for key in self.customers.keys():
            customer = self.customers.get(key)
            if customer is not None:
                customers[key] = customer.model_dump(mode="json")
        return {
            "conversations": conversations,
            "customers": customers,
            "contact_controls": {key: value.model_dump(mode="json") for key, value in self.contact_controls.items()},
        }

    def load_snapshot(self, snapshot: Snapshot) -> int:
        loaded = 0
        for key, payload in (snapshot.get("conversations") or {}).items():
            try:
                self.conversations.set(key, Conversation.model_validate(payload))
                loaded += 1
            except ValidationError as exc:
                logger.warning("Conversa persistida inválida (%s): %s", key, exc)
        for key, payload in (snapshot.get("customers") or {}).items():
            try:
                self.customers.set(key, CustomerProfile.model_validate(payload))
            except ValidationError as exc:
                logger.warning("Cliente persistido inválido (%s): %s", key, exc)
        for key, payload in (snapshot.get("contact_controls") or {}).items():
            try:
                self.contact_controls[key] = ContactControl.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Controle de contato inválido (%s): %s", key, exc)
        return loaded
