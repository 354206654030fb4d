from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from atendimento.fsm.states import ConversationState
from atendimento.schemas.catalog import CatalogEntry

MODE_DELIVERY = "DELIVERY"
MODE_TAKEOUT = "TAKEOUT"

PAYMENT_PIX = "PIX"
PAYMENT_CARD = "CARD"
PAYMENT_CASH = "CASH"
PAYMENT_VOUCHER = "VOUCHER"
VALID_PAYMENTS = frozenset({PAYMENT_PIX, PAYMENT_CARD, PAYMENT_CASH, PAYMENT_VOUCHER})

ADDRESS_FIELDS = ("street_name", "street_number", "neighborhood", "city", "state", "postal_code")
REQUIRED_ADDRESS_FIELDS = ("street_name", "street_number", "neighborhood")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CartItem(BaseModel):
    name: str
    quantity: int = 1
    catalog_code: Optional[str] = None
    unit_price_cents: Optional[int] = None


class Address(BaseModel):
    street_name: str = ""
    street_number: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""


class Transaction(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    mode: str = ""
    address: Address = Field(default_factory=Address)
    payment: str = ""
    customer_name: str = ""
    notes: str = ""
    delivery_fee_cents: int = 0
    total_amount_cents: int = 0
    order_id: Optional[str] = None


class ChatMessage(BaseModel):
    role: str
    content: str
    created_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class Conversation(BaseModel):
    id: str
    tenant_id: str
    phone: str
    remote_jid: Optional[str] = None
    contact_name: str = ""
    state: ConversationState = ConversationState.INIT
    state_updated_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    transaction: Transaction = Field(default_factory=Transaction)
    confirmed: dict[str, bool] = Field(default_factory=dict)
    pending_field_confirmation: Optional[str] = None
    items_phase_complete: bool = False
    upsell_done: bool = False
    consecutive_failures: int = 0
    last_processed_hash: str = ""
    last_processed_at: Optional[datetime] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    message_count: int = 0
    context_summary: str = ""
    catalog: List[CatalogEntry] = Field(default_factory=list)
    awaiting_repeat_choice: bool = False
    repeat_preview: Optional[Transaction] = None
    submitted_transaction: Optional[Transaction] = None
    last_greeting_date: Optional[str] = None
    handoff_notified: bool = False

    def reset_flow(self) -> None:
        """Zera o pedido em andamento mantendo o histórico de mensagens."""
        self.transaction = Transaction()
        self.confirmed = {}
        self.pending_field_confirmation = None
        self.items_phase_complete = False
        self.upsell_done = False
        self.awaiting_repeat_choice = False
        self.repeat_preview = None
        self.submitted_transaction = None


class CustomerProfile(BaseModel):
    tenant_id: str
    phone: str
    name: str = ""
    total_orders: int = 0
    last_order_snapshot: Optional[Transaction] = None
    recent_context: List[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utcnow)
