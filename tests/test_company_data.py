import asyncio

from atendimento.orders.base import OrderProviderError
from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import Address
from atendimento.services.company_data import (
    CachedCatalogSource,
    SaiposCatalogSource,
    StaticCatalogSource,
    fee_for_neighborhood,
    normalize_catalog,
    reais_to_cents,
)
from atendimento.services.tenants import TenantRuntime
from tests.fixtures_data import CATALOG_ROWS, DELIVERY_AREAS


class _CountingSource:
    def __init__(self, entries=None, error=None):
        self.entries = entries or [CatalogEntry(code="A1", name="Açaí", unit_price_cents=1500)]
        self.error = error
        self.calls = 0

    async def load_catalog(self, runtime):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.entries)

    async def load_delivery_fee(self, runtime, address):
        return 321


class _FakeSaiposClient:
    def __init__(self):
        self.calls = 0

    async def fetch_catalog(self, runtime):
        self.calls += 1
        return {"items": [{"id_store_item": 9, "desc_item": "Esfiha", "price": 4.5, "desc_category": "Salgados"}]}


def test_reais_to_cents_accepts_comma_and_rounds():
    assert reais_to_cents("49,90") == 4990
    assert reais_to_cents(6.005) == 601
    assert reais_to_cents(None) == 0
    assert reais_to_cents("abc") == 0
    assert reais_to_cents("-3") == 0


def test_normalize_catalog_skips_unavailable_duplicates_and_nameless_rows():
    rows = CATALOG_ROWS + [
        {"code": "PZ-CAL", "name": "Duplicada", "price": 1},
        {"code": "X1", "name": "Fora de linha", "price": 1, "available": False},
        {"code": "X2", "name": "Desligada", "price": 1, "on_off": False},
        {"code": "X3", "price": 1},
        "lixo",
    ]

    entries = normalize_catalog(rows)

    assert [entry.code for entry in entries] == ["PZ-CAL", "PZ-MAR", "BB-COC", "BB-GUA", "SB-PUD"]
    assert entries[0].unit_price_cents == 4990
    assert entries[2].category == "Bebidas"


def test_normalize_catalog_accepts_saipos_shape():
    entries = normalize_catalog({"items": [{"codigo_saipos": 77, "desc_item": "Pastel", "unit_price": "8"}]})

    assert entries == [CatalogEntry(code="77", name="Pastel", unit_price_cents=800)]


def test_fee_for_neighborhood_ignores_case_and_accents():
    runtime = TenantRuntime(id="pizzaria", delivery_areas=DELIVERY_AREAS, default_delivery_fee="7")

    assert fee_for_neighborhood(runtime, "centro") == 500
    assert fee_for_neighborhood(runtime, "JARDIM AMERICA") == 850
    assert fee_for_neighborhood(runtime, "Vila Nova") == 700
    assert fee_for_neighborhood(TenantRuntime(id="x", delivery_areas=DELIVERY_AREAS), "Vila Nova") is None


def test_static_source_reads_runtime_catalog():
    runtime = TenantRuntime(id="pizzaria", catalog=CATALOG_ROWS, delivery_areas=DELIVERY_AREAS)
    source = StaticCatalogSource()

    assert len(asyncio.run(source.load_catalog(runtime))) == 5
    assert asyncio.run(source.load_delivery_fee(runtime, Address(neighborhood="Centro"))) == 500


def test_saipos_source_prefers_file_catalog_and_skips_unconfigured_tenants():
    client = _FakeSaiposClient()
    source = SaiposCatalogSource(client)

    from_file = asyncio.run(source.load_catalog(TenantRuntime(id="a", catalog=CATALOG_ROWS)))
    assert len(from_file) == 5
    assert asyncio.run(source.load_catalog(TenantRuntime(id="b"))) == []
    assert client.calls == 0


def test_saipos_source_fetches_remote_catalog_when_configured():
    client = _FakeSaiposClient()
    runtime = TenantRuntime(id="c")
    runtime.saipos.api_url = "https://saipos.test"
    runtime.saipos.id_partner = "parceiro"
    runtime.saipos.secret = "segredo"

    entries = asyncio.run(SaiposCatalogSource(client).load_catalog(runtime))

    assert entries == [CatalogEntry(code="9", name="Esfiha", unit_price_cents=450, category="Salgados")]
    assert client.calls == 1


def test_cached_source_caches_per_tenant_and_invalidates():
    inner = _CountingSource()
    cached = CachedCatalogSource(inner, ttl_ms=60000)
    runtime = TenantRuntime(id="pizzaria")

    asyncio.run(cached.load_catalog(runtime))
    asyncio.run(cached.load_catalog(runtime))
    assert inner.calls == 1

    cached.invalidate("pizzaria")
    asyncio.run(cached.load_catalog(runtime))
    assert inner.calls == 2

    assert asyncio.run(cached.load_delivery_fee(runtime, Address())) == 321


def test_cached_source_skips_non_restaurant_and_swallows_provider_errors():
    inner = _CountingSource(error=OrderProviderError("sem credenciais"))
    cached = CachedCatalogSource(inner)

    assert asyncio.run(cached.load_catalog(TenantRuntime(id="pet", segment="petshop"))) == []
    assert inner.calls == 0
    assert asyncio.run(cached.load_catalog(TenantRuntime(id="pizzaria"))) == []
    assert inner.calls == 1
