from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any

from atendimento.core.config import (
    ANAFOOD_API_TOKEN,
    ANAFOOD_API_URL,
    ANAFOOD_AUTH_MODE,
    ANAFOOD_COMPANY_HEADER,
    ANAFOOD_COMPANY_ID,
    ANAFOOD_COMPANY_KEY,
    DEFAULT_AGENT_NAME,
    DEFAULT_GREETING_MESSAGE,
    EVOLUTION_API_KEY,
    EVOLUTION_API_URL,
    EVOLUTION_INSTANCE,
    MESSAGE_BUFFER_MAX_MS,
    MESSAGE_BUFFER_MIN_MS,
    MESSAGE_BUFFER_MS,
    OPENAI_MODEL,
    SAIPOS_CREDENTIALS,
    TENANTS_CONFIG_PATH,
)

logger = logging.getLogger(__name__)

DEFAULT_TENANT_ID = "default"
_ENV_PLACEHOLDER = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _interpolate(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _interpolate(inner) for key, inner in value.items()}
    if isinstance(value, list):
        return [_interpolate(item) for item in value]
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda match: os.getenv(match.group(1), ""), value)
    return value


def load_tenants_config(path: str | Path | None = None) -> dict[str, Any]:
    """Lê o arquivo de tenants. Arquivo ausente ou inválido vira config vazia."""
    config_path = Path(path or TENANTS_CONFIG_PATH)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Config de tenants indisponível em %s: %s", config_path, exc)
        return {"default_tenant_id": None, "tenants": []}

    config = _interpolate(raw) if isinstance(raw, dict) else {}
    tenants = [tenant for tenant in config.get("tenants") or [] if isinstance(tenant, dict) and tenant.get("id")]
    default_id = config.get("defaultTenantId") or (tenants[0]["id"] if tenants else None)
    return {"default_tenant_id": default_id, "tenants": tenants}


def _is_active(tenant: dict[str, Any]) -> bool:
    return tenant.get("active") is not False


def resolve_tenant(
    tenant_id: str | None = None,
    instance_name: str | None = None,
    *,
    config: dict[str, Any] | None = None,
) -> dict[str, Any] | None:
    cfg = config if config is not None else load_tenants_config()
    tenants: list[dict[str, Any]] = cfg.get("tenants") or []

    if tenant_id:
        found = next((t for t in tenants if t.get("id") == tenant_id and _is_active(t)), None)
        if found:
            return found

    if instance_name:
        wanted = str(instance_name).strip().lower()
        found = next(
            (
                t
                for t in tenants
                if _is_active(t) and str((t.get("evolution") or {}).get("instance") or "").lower() == wanted
            ),
            None,
        )
        if found:
            return found

    default_id = cfg.get("default_tenant_id")
    if default_id:
        found = next((t for t in tenants if t.get("id") == default_id and _is_active(t)), None)
        if found:
            return found

    if tenants:
        return next((t for t in tenants if _is_active(t)), tenants[0])
    return None


def clamp_buffer_window(value: Any, default: int = MESSAGE_BUFFER_MS) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        number = default
    return max(MESSAGE_BUFFER_MIN_MS, min(MESSAGE_BUFFER_MAX_MS, number))


@dataclass
class EvolutionSettings:
    api_url: str = ""
    api_key: str = ""
    instance: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.api_key and self.instance)


@dataclass
class AnaFoodSettings:
    endpoint: str = ""
    auth_mode: str = "company_key"
    company_key: str = ""
    api_token: str = ""
    company_id: str = ""
    company_header: str = ""


@dataclass
class SaiposSettings:
    api_url: str = ""
    id_partner: str = ""
    secret: str = ""
    cod_store: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.api_url and self.id_partner and self.secret)


@dataclass
class TenantRuntime:
    id: str
    name: str = "Tenant"
    environment: str = "homologation"
    segment: str = "restaurant"
    agent_name: str = DEFAULT_AGENT_NAME
    tone: str = "simpática e objetiva"
    custom_prompt: str = ""
    model: str = OPENAI_MODEL
    temperature: float = 0.2
    buffer_window_ms: int = MESSAGE_BUFFER_MS
    greeting_message: str = DEFAULT_GREETING_MESSAGE
    require_address: bool = True
    order_provider: str = "saipos"
    fallback_provider: str | None = None
    evolution: EvolutionSettings = field(default_factory=EvolutionSettings)
    anafood: AnaFoodSettings = field(default_factory=AnaFoodSettings)
    saipos: SaiposSettings = field(default_factory=SaiposSettings)
    catalog: list[dict[str, Any]] = field(default_factory=list)
    delivery_areas: list[dict[str, Any]] = field(default_factory=list)
    default_delivery_fee: Any = None


def _saipos_settings(tenant: dict[str, Any], environment: str) -> SaiposSettings:
    tenant_creds = (tenant.get("saipos") or {}).get(environment)
    if tenant_creds:
        return SaiposSettings(
            api_url=str(tenant_creds.get("baseUrl") or tenant_creds.get("apiUrl") or "").rstrip("/"),
            id_partner=str(tenant_creds.get("idPartner") or ""),
            secret=str(tenant_creds.get("secret") or ""),
            cod_store=str(tenant_creds.get("codStore") or ""),
        )
    env_creds = SAIPOS_CREDENTIALS.get(environment) or SAIPOS_CREDENTIALS["homologation"]
    return SaiposSettings(**env_creds)


def tenant_runtime(
    tenant: dict[str, Any] | None,
    settings: dict[str, Any] | None = None,
    instance: str | None = None,
) -> TenantRuntime:
    """Monta o runtime do tenant juntando arquivo, overrides e variáveis de ambiente."""
    tenant = tenant or {}
    settings = settings or {}
    agent = tenant.get("agent") or {}
    business = tenant.get("business") or {}
    restaurant = business.get("restaurant") or {}
    evolution = tenant.get("evolution") or {}
    anafood = (tenant.get("integrations") or {}).get("anafood") or {}
    environment = str(tenant.get("environment") or "homologation").lower()

    greeting = str(settings.get("greeting_message") or agent.get("greetingMessage") or DEFAULT_GREETING_MESSAGE)
    temperature = agent.get("temperature")
    fallback = restaurant.get("fallbackProvider")

    return TenantRuntime(
        id=str(tenant.get("id") or DEFAULT_TENANT_ID),
        name=str(tenant.get("name") or "Tenant"),
        environment=environment,
        segment=str(business.get("segment") or "restaurant").lower(),
        agent_name=str(agent.get("name") or DEFAULT_AGENT_NAME),
        tone=str(agent.get("personality") or "simpática e objetiva"),
        custom_prompt=str(agent.get("customPrompt") or ""),
        model=str(agent.get("model") or OPENAI_MODEL),
        temperature=float(temperature) if isinstance(temperature, (int, float)) else 0.2,
        buffer_window_ms=clamp_buffer_window(
            settings.get("buffer_window_ms") or agent.get("bufferWindowMs") or MESSAGE_BUFFER_MS
        ),
        greeting_message=greeting.strip() or DEFAULT_GREETING_MESSAGE,
        require_address=restaurant.get("requireAddress") is not False,
        order_provider=str(restaurant.get("orderProvider") or "saipos").lower(),
        fallback_provider=str(fallback).lower() if fallback else None,
        evolution=EvolutionSettings(
            api_url=str(evolution.get("apiUrl") or EVOLUTION_API_URL).rstrip("/"),
            api_key=str(evolution.get("apiKey") or EVOLUTION_API_KEY),
            instance=str(instance or evolution.get("instance") or EVOLUTION_INSTANCE),
        ),
        anafood=AnaFoodSettings(
            endpoint=str(anafood.get("endpoint") or ANAFOOD_API_URL),
            auth_mode=str(anafood.get("authMode") or ANAFOOD_AUTH_MODE or "company_key").lower(),
            company_key=str(anafood.get("companyKey") or ANAFOOD_COMPANY_KEY),
            api_token=str(anafood.get("apiToken") or ANAFOOD_API_TOKEN),
            company_id=str(anafood.get("companyId") or ANAFOOD_COMPANY_ID),
            company_header=str(anafood.get("companyHeader") or ANAFOOD_COMPANY_HEADER),
        ),
        saipos=_saipos_settings(tenant, environment),
        catalog=list(restaurant.get("catalog") or []),
        delivery_areas=list(restaurant.get("deliveryAreas") or []),
        default_delivery_fee=restaurant.get("defaultDeliveryFee"),
    )


class AgentSettingsRegistry:
    """Overrides de runtime por tenant (janela do buffer e saudação)."""

    def __init__(self) -> None:
        self._settings: dict[str, dict[str, Any]] = {}
        self._lock = Lock()

    def get(self, tenant_id: str) -> dict[str, Any]:
        with self._lock:
            current = dict(self._settings.get(tenant_id) or {})
        return {
            "tenant_id": tenant_id,
            "buffer_window_ms": clamp_buffer_window(current.get("buffer_window_ms") or MESSAGE_BUFFER_MS),
            "greeting_message": str(current.get("greeting_message") or DEFAULT_GREETING_MESSAGE),
        }

    def overrides(self, tenant_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._settings.get(tenant_id) or {})

    def update(self, tenant_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            current = dict(self._settings.get(tenant_id) or {})
            if patch.get("buffer_window_ms") is not None:
                current["buffer_window_ms"] = clamp_buffer_window(patch["buffer_window_ms"])
            greeting = str(patch.get("greeting_message") or "").strip()
            if greeting:
                current["greeting_message"] = greeting
            self._settings[tenant_id] = current
        return self.get(tenant_id)

    def dump(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {key: dict(value) for key, value in self._settings.items()}

    def load(self, data: dict[str, dict[str, Any]]) -> None:
        with self._lock:
            self._settings = {key: dict(value) for key, value in (data or {}).items()}


class TenantDirectory:
    """Resolve tenants a partir do arquivo e aplica os overrides do registro."""

    def __init__(self, settings: AgentSettingsRegistry, config_path: str | Path | None = None) -> None:
        self.settings = settings
        self.config_path = config_path

    def resolve(self, tenant_id: str | None = None, instance_name: str | None = None) -> TenantRuntime:
        tenant = resolve_tenant(tenant_id, instance_name, config=load_tenants_config(self.config_path))
        resolved_id = str((tenant or {}).get("id") or tenant_id or DEFAULT_TENANT_ID)
        return tenant_runtime(tenant, self.settings.overrides(resolved_id), instance_name)

    def list_ids(self) -> list[str]:
        return [str(t["id"]) for t in load_tenants_config(self.config_path)["tenants"]]
