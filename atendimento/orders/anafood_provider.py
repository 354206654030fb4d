from __future__ import annotations

import logging
import re
import time
from typing import Any

import httpx

from atendimento.orders.base import OrderDraft, OrderResult, cents_to_reais
from atendimento.schemas.conversation import MODE_DELIVERY, MODE_TAKEOUT, PAYMENT_CARD, PAYMENT_PIX
from atendimento.services.tenants import AnaFoodSettings, TenantRuntime
from atendimento.whatsapp.base import sanitize_payload

logger = logging.getLogger(__name__)


def to_anafood_type(mode: str) -> str:
    return "pickup" if (mode or MODE_DELIVERY).upper() == MODE_TAKEOUT else "delivery"


def to_anafood_payment(payment: str) -> str:
    if payment == PAYMENT_PIX:
        return "pix"
    if payment == PAYMENT_CARD:
        return "cartao"
    return (payment or "").lower() or "dinheiro"


def build_anafood_payload(settings: AnaFoodSettings, draft: OrderDraft) -> dict[str, Any]:
    address = draft.address
    order: dict[str, Any] = {
        "customer_name": draft.customer_name or "Cliente WhatsApp",
        "customer_phone": draft.phone,
        "source": "whatsapp",
        "type": to_anafood_type(draft.mode),
        "payment_method": to_anafood_payment(draft.payment),
        "address": address.street_name,
        "address_number": address.street_number,
        "neighborhood": address.neighborhood,
        "city": address.city,
        "state": address.state,
        "zip_code": re.sub(r"\D", "", address.postal_code or ""),
        "items": [
            {
                "name": line.entry.name,
                "quantity": line.quantity,
                "price": cents_to_reais(line.entry.unit_price_cents),
            }
            for line in draft.lines
        ],
        "delivery_fee": cents_to_reais(draft.delivery_fee_cents) if draft.mode == MODE_DELIVERY else 0,
        "total": cents_to_reais(draft.total_cents),
        "observations": draft.notes,
    }
    payload: dict[str, Any] = {"action": "create", "order": order}
    if settings.company_id:
        payload["company_id"] = settings.company_id
        order["company_id"] = settings.company_id
    return payload


def build_anafood_headers(settings: AnaFoodSettings) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if settings.auth_mode == "company_key" and settings.company_key:
        headers["X-Company-Key"] = settings.company_key
    if settings.auth_mode == "api_token" and settings.api_token:
        headers["X-API-Token"] = settings.api_token
        if settings.company_header:
            headers["X-Company-ID"] = settings.company_header
    return headers


class AnaFoodOrderProvider:
    name = "anafood"

    def __init__(self, *, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport

    async def create_order(self, runtime: TenantRuntime, draft: OrderDraft) -> OrderResult:
        settings = runtime.anafood
        if not settings.endpoint:
            return OrderResult(ok=False, provider=self.name, error="ANAFOOD endpoint não configurado")

        payload = build_anafood_payload(settings, draft)
        headers = build_anafood_headers(settings)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(settings.endpoint, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Erro de rede ao criar pedido AnaFood: %s", exc, extra={"provider": self.name})
            return OrderResult(ok=False, provider=self.name, error=str(exc))

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 400:
            logger.error(
                "Erro ao criar pedido AnaFood: HTTP %s %s",
                response.status_code,
                sanitize_payload(data),
                extra={"provider": self.name},
            )
            return OrderResult(
                ok=False,
                provider=self.name,
                error=str(data.get("error") or f"HTTP {response.status_code}"),
                unresolved_items=list(data.get("unresolved_items") or []),
            )

        order_id = (data.get("order") or {}).get("id") or f"anafood-{int(time.time() * 1000)}"
        return OrderResult(ok=True, order_id=str(order_id), provider=self.name)
