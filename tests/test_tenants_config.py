import json
from pathlib import Path

from atendimento.services.tenants import (
    AgentSettingsRegistry,
    TenantDirectory,
    clamp_buffer_window,
    load_tenants_config,
    resolve_tenant,
    tenant_runtime,
)
from tests.fixtures_data import TENANTS_FILE

EXAMPLE_CONFIG = Path(__file__).resolve().parents[1] / "config" / "tenants.example.json"


def _write_config(tmp_path, data=TENANTS_FILE):
    path = tmp_path / "tenants.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_tenants_config_interpolates_env_placeholders(tmp_path, monkeypatch):
    monkeypatch.setenv("EVO_TEST_URL", "https://evo.test")

    config = load_tenants_config(_write_config(tmp_path))

    assert config["default_tenant_id"] == "pizzaria"
    assert config["tenants"][0]["evolution"]["apiUrl"] == "https://evo.test"


def test_missing_or_invalid_config_becomes_empty(tmp_path):
    assert load_tenants_config(tmp_path / "nao-existe.json") == {"default_tenant_id": None, "tenants": []}

    broken = tmp_path / "quebrado.json"
    broken.write_text("{nao é json", encoding="utf-8")
    assert load_tenants_config(broken)["tenants"] == []


def test_resolve_tenant_by_id_instance_and_default(tmp_path):
    config = load_tenants_config(_write_config(tmp_path))

    assert resolve_tenant("hamburgueria", config=config)["id"] == "hamburgueria"
    assert resolve_tenant(None, "BURGER-WA", config=config)["id"] == "hamburgueria"
    assert resolve_tenant("desativado", config=config)["id"] == "pizzaria"
    assert resolve_tenant(None, "off-wa", config=config)["id"] == "pizzaria"
    assert resolve_tenant(config={"default_tenant_id": None, "tenants": []}) is None


def test_tenant_runtime_reads_file_and_overrides():
    tenant = TENANTS_FILE["tenants"][0]

    runtime = tenant_runtime(tenant, {"greeting_message": "Boa noite!"}, instance="outra-instancia")

    assert runtime.id == "pizzaria"
    assert runtime.agent_name == "Bia"
    assert runtime.greeting_message == "Boa noite!"
    assert runtime.buffer_window_ms == 3000
    assert runtime.order_provider == "saipos"
    assert runtime.fallback_provider == "anafood"
    assert runtime.evolution.instance == "outra-instancia"
    assert len(runtime.catalog) == 5
    assert runtime.default_delivery_fee == "7.00"


def test_tenant_runtime_defaults_without_file():
    runtime = tenant_runtime(None)

    assert runtime.id == "default"
    assert runtime.segment == "restaurant"
    assert runtime.require_address is True
    assert runtime.fallback_provider is None


def test_clamp_buffer_window_limits():
    assert clamp_buffer_window(1) == 3000
    assert clamp_buffer_window(999999) == 120000
    assert clamp_buffer_window("15000") == 15000
    assert clamp_buffer_window("abc", default=5000) == 5000


def test_agent_settings_registry_update_and_dump():
    registry = AgentSettingsRegistry()

    settings = registry.update("pizzaria", {"buffer_window_ms": 500, "greeting_message": "  Olá!  "})

    assert settings == {"tenant_id": "pizzaria", "buffer_window_ms": 3000, "greeting_message": "Olá!"}
    assert registry.dump() == {"pizzaria": {"buffer_window_ms": 3000, "greeting_message": "Olá!"}}

    registry.update("pizzaria", {"greeting_message": ""})
    assert registry.get("pizzaria")["greeting_message"] == "Olá!"

    restored = AgentSettingsRegistry()
    restored.load(registry.dump())
    assert restored.overrides("pizzaria")["buffer_window_ms"] == 3000


def test_tenant_directory_applies_registry_overrides(tmp_path):
    registry = AgentSettingsRegistry()
    registry.update("pizzaria", {"greeting_message": "Bem-vindo!"})
    directory = TenantDirectory(registry, _write_config(tmp_path))

    runtime = directory.resolve(None, "pizzaria-wa")

    assert runtime.id == "pizzaria"
    assert runtime.greeting_message == "Bem-vindo!"
    assert directory.list_ids() == ["pizzaria", "hamburgueria", "desativado"]


def test_example_config_is_loadable():
    config = load_tenants_config(EXAMPLE_CONFIG)
    runtime = tenant_runtime(resolve_tenant(config=config))

    assert runtime.id == "pizzaria-centro"
    assert runtime.order_provider == "saipos"
    assert len(runtime.delivery_areas) == 2
