from __future__ import annotations

import base64
import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from atendimento.core.config import SAIPOS_TOKEN_DEFAULT_TTL_SECONDS
from atendimento.orders.base import OrderDraft, OrderProviderError, OrderResult, cents_to_reais
from atendimento.schemas.conversation import MODE_DELIVERY, PAYMENT_PIX
from atendimento.services.tenants import TenantRuntime

logger = logging.getLogger(__name__)

TOKEN_RENEW_MARGIN_SECONDS = 5 * 60


def _token_expiry(token: str, now: float) -> float:
    try:
        segment = token.split(".")[1]
        padded = segment + "=" * (-len(segment) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))
        exp = float(payload["exp"])
    except (IndexError, KeyError, TypeError, ValueError):
        return now + SAIPOS_TOKEN_DEFAULT_TTL_SECONDS
    return exp - TOKEN_RENEW_MARGIN_SECONDS


class SaiposClient:
    """Cliente HTTP da SAIPOS com cache de token por tenant e ambiente."""

    def __init__(self, *, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout = timeout
        self.transport = transport
        self._tokens: dict[str, tuple[str, float]] = {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def get_token(self, runtime: TenantRuntime) -> str:
        creds = runtime.saipos
        if not creds.configured:
            raise OrderProviderError(
                f'Credenciais não configuradas para tenant "{runtime.id}" no ambiente "{runtime.environment}"'
            )

        cache_key = f"{runtime.id}:{runtime.environment}"
        now = time.time()
        cached = self._tokens.get(cache_key)
        if cached and now < cached[1]:
            return cached[0]

        logger.info("Obtendo novo token SAIPOS", extra={"provider": "saipos"})
        async with self._client() as client:
            response = await client.post(
                f"{creds.api_url}/auth",
                json={"idPartner": creds.id_partner, "secret": creds.secret},
                headers={"Accept": "application/json"},
            )
        data = _json_or_empty(response)
        if response.status_code >= 400 or not data.get("token"):
            raise OrderProviderError(data.get("errorMessage") or "Falha na autenticação SAIPOS")

        token = str(data["token"])
        self._tokens[cache_key] = (token, _token_expiry(token, now))
        return token

    async def request(
        self,
        runtime: TenantRuntime,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> Any:
        token = await self.get_token(runtime)
        url = f"{runtime.saipos.api_url}{path}"
        logger.info("%s %s", method, url, extra={"provider": "saipos"})
        async with self._client() as client:
            response = await client.request(
                method,
                url,
                json=body,
                headers={"Accept": "application/json", "Authorization": token},
            )
        data = _json_or_empty(response)
        if response.status_code >= 400:
            message = data.get("errorMessage") if isinstance(data, dict) else None
            raise OrderProviderError(message or f"HTTP {response.status_code}")
        return data

    async def fetch_catalog(self, runtime: TenantRuntime) -> Any:
        return await self.request(runtime, "GET", f"/catalog?cod_store={runtime.saipos.cod_store}")

    def clear_tokens(self) -> None:
        self._tokens.clear()


def _json_or_empty(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def build_saipos_order(runtime: TenantRuntime, draft: OrderDraft, *, now: datetime | None = None) -> dict[str, Any]:
    moment = now or datetime.now(timezone.utc)
    millis = int(moment.timestamp() * 1000)
    mode = draft.mode or MODE_DELIVERY
    created_at = moment.isoformat()

    order_method: dict[str, Any] = {"mode": mode, "scheduled": False, "delivery_date_time": created_at}
    if mode == MODE_DELIVERY:
        order_method.update(delivery_by="RESTAURANT", delivery_fee=cents_to_reais(draft.delivery_fee_cents))

    body: dict[str, Any] = {
        "order_id": f"{runtime.id}-ANA-{millis}",
        "display_id": str(millis)[-4:],
        "cod_store": runtime.saipos.cod_store,
        "created_at": created_at,
        "notes": draft.notes or f"Pedido WhatsApp - {runtime.id}",
        "total_amount": cents_to_reais(draft.total_cents),
        "total_discount": 0,
        "order_method": order_method,
        "customer": {
            "id": draft.phone,
            "name": draft.customer_name or "Cliente WhatsApp",
            "phone": draft.phone,
        },
        "items": [
            {
                "integration_code": line.entry.code,
                "desc_item": line.entry.name,
                "quantity": line.quantity,
                "unit_price": cents_to_reais(line.entry.unit_price_cents),
            }
            for line in draft.lines
        ],
        "payment_types": [
            {
                "code": "PARTNER_PAYMENT" if draft.payment == PAYMENT_PIX else "CRE",
                "amount": cents_to_reais(draft.total_cents),
                "change_for": 0,
            }
        ],
    }
    if mode == MODE_DELIVERY:
        address = draft.address
        body["delivery_address"] = {
            "street_name": address.street_name,
            "street_number": address.street_number or "S/N",
            "neighborhood": address.neighborhood,
            "district": address.neighborhood,
            "city": address.city,
            "state": address.state,
            "country": "BR",
            "postal_code": re.sub(r"\D", "", address.postal_code or ""),
        }
    return body


class SaiposOrderProvider:
    name = "saipos"

    def __init__(self, client: SaiposClient | None = None) -> None:
        self.client = client or SaiposClient()

    async def create_order(self, runtime: TenantRuntime, draft: OrderDraft) -> OrderResult:
        body = build_saipos_order(runtime, draft)
        try:
            await self.client.request(runtime, "POST", "/order", body)
        except OrderProviderError as exc:
            logger.error("Erro ao criar pedido SAIPOS: %s", exc.message, extra={"provider": self.name})
            return OrderResult(ok=False, provider=self.name, error=exc.message, unresolved_items=exc.unresolved_items)
        except httpx.HTTPError as exc:
            logger.error("Erro de rede ao criar pedido SAIPOS: %s", exc, extra={"provider": self.name})
            return OrderResult(ok=False, provider=self.name, error=str(exc))
        return OrderResult(ok=True, order_id=body["order_id"], provider=self.name)
