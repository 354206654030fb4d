from __future__ import annotations

import logging
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Protocol

import httpx

from atendimento.core.config import COMPANY_DATA_CACHE_TTL_MS
from atendimento.orders.base import OrderProviderError
from atendimento.orders.saipos_provider import SaiposClient
from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import Address
from atendimento.services.tenants import TenantRuntime
from atendimento.services.text_normalization import normalize

logger = logging.getLogger(__name__)


class CatalogSource(Protocol):
    async def load_catalog(self, runtime: TenantRuntime) -> list[CatalogEntry]:
        ...

    async def load_delivery_fee(self, runtime: TenantRuntime, address: Address) -> int | None:
        ...


def reais_to_cents(value: Any) -> int:
    try:
        amount = Decimal(str(value).replace(",", ".")) if value not in (None, "") else Decimal("0")
    except InvalidOperation:
        return 0
    cents = (amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(int(cents), 0)


def _rows(raw: Any) -> list[dict[str, Any]]:
    if isinstance(raw, list):
        rows = raw
    elif isinstance(raw, dict):
        rows = raw.get("items") or raw.get("products") or []
    else:
        rows = []
    return [row for row in rows if isinstance(row, dict)]


def normalize_catalog(raw: Any) -> list[CatalogEntry]:
    """Converte o cardápio bruto (SAIPOS ou arquivo) em entradas com preço em centavos.

    Entradas repetidas pelo mesmo código ficam só com a primeira ocorrência.
    """
    seen: set[str] = set()
    entries: list[CatalogEntry] = []
    for row in _rows(raw):
        if row.get("available") is False or row.get("on_off") is False:
            continue
        code = str(
            row.get("integration_code")
            or row.get("codigo_interno")
            or row.get("codigo_saipos")
            or row.get("id_store_item")
            or row.get("code")
            or ""
        ).strip()
        name = str(row.get("item") or row.get("desc_item") or row.get("name") or "").strip()
        if not code or not name or code in seen:
            continue
        seen.add(code)
        price = row.get("price", row.get("unit_price", 0))
        category = row.get("category") or row.get("desc_category")
        entries.append(
            CatalogEntry(
                code=code,
                name=name,
                unit_price_cents=reais_to_cents(price),
                category=str(category) if category else None,
            )
        )
    return entries


def fee_for_neighborhood(runtime: TenantRuntime, neighborhood: str) -> int | None:
    target = normalize(neighborhood)
    if target:
        for area in runtime.delivery_areas:
            name = normalize(str(area.get("neighborhood") or area.get("bairro") or area.get("name") or ""))
            if name and name == target:
                return reais_to_cents(area.get("fee", area.get("taxa", 0)))
    if runtime.default_delivery_fee is not None:
        return reais_to_cents(runtime.default_delivery_fee)
    return None


class StaticCatalogSource:
    """Cardápio e taxas vindos do próprio arquivo de tenants."""

    async def load_catalog(self, runtime: TenantRuntime) -> list[CatalogEntry]:
        return normalize_catalog(runtime.catalog)

    async def load_delivery_fee(self, runtime: TenantRuntime, address: Address) -> int | None:
        return fee_for_neighborhood(runtime, address.neighborhood)


class SaiposCatalogSource:
    def __init__(self, client: SaiposClient | None = None) -> None:
        self.client = client or SaiposClient()

    async def load_catalog(self, runtime: TenantRuntime) -> list[CatalogEntry]:
        if runtime.catalog:
            return normalize_catalog(runtime.catalog)
        if not runtime.saipos.configured:
            return []
        raw = await self.client.fetch_catalog(runtime)
        return normalize_catalog(raw)

    async def load_delivery_fee(self, runtime: TenantRuntime, address: Address) -> int | None:
        return fee_for_neighborhood(runtime, address.neighborhood)


class CachedCatalogSource:
    """Cache com TTL por tenant na frente de outra fonte de cardápio."""

    def __init__(self, source: CatalogSource, *, ttl_ms: int = COMPANY_DATA_CACHE_TTL_MS) -> None:
        self.source = source
        self.ttl_seconds = ttl_ms / 1000
        self._cache: dict[str, tuple[float, list[CatalogEntry]]] = {}

    async def load_catalog(self, runtime: TenantRuntime) -> list[CatalogEntry]:
        if runtime.segment != "restaurant":
            return []
        now = time.monotonic()
        cached = self._cache.get(runtime.id)
        if cached and now - cached[0] <= self.ttl_seconds:
            return list(cached[1])

        try:
            entries = await self.source.load_catalog(runtime)
        except (OrderProviderError, httpx.HTTPError) as exc:
            logger.error("Falha ao carregar cardápio: %s", exc)
            return []
        if entries:
            self._cache[runtime.id] = (now, entries)
            logger.info("Cardápio carregado (%s itens)", len(entries))
        return list(entries)

    async def load_delivery_fee(self, runtime: TenantRuntime, address: Address) -> int | None:
        return await self.source.load_delivery_fee(runtime, address)

    def invalidate(self, tenant_id: str | None = None) -> None:
        if tenant_id is None:
            self._cache.clear()
        else:
            self._cache.pop(tenant_id, None)
