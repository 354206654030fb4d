from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from atendimento.services.tenants import TenantRuntime


@dataclass
class SendResult:
    ok: bool
    number: str | None = None
    error: str | None = None
    attempts: int = 0


@dataclass
class InboundMessage:
    message_id: str
    phone: str
    text: str
    remote_jid: str = ""
    participant_jid: str = ""
    contact_name: str = ""
    instance: str | None = None
    has_audio: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


class TransportProvider(Protocol):
    name: str

    async def send_text(
        self,
        runtime: TenantRuntime,
        phone: str,
        text: str,
        remote_jid: str | None = None,
    ) -> SendResult:
        ...


SENSITIVE_KEYS = {"apikey", "api_key", "secret", "authorization", "token", "password"}


def _mask_value(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "****"
    return f"****{text[-4:]}"


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _sanitize_value(key, inner) for key, inner in value.items()}
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    def _sanitize_value(key: str, value: Any) -> Any:
        if key.lower() in SENSITIVE_KEYS:
            return _mask_value(value)
        return _sanitize(value)

    return _sanitize(payload)


def safe_json(payload: dict[str, Any]) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False)
    except (TypeError, ValueError):
        return "{}"


def only_digits(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def canonical_phone(value: Any) -> str:
    """Normaliza telefone brasileiro para o formato com DDI 55."""
    digits = only_digits(value)
    if not digits:
        return ""
    if digits.startswith("55") and len(digits) in {12, 13}:
        return digits
    if len(digits) in {10, 11}:
        return f"55{digits}"
    if 10 <= len(digits) <= 15:
        return digits
    return ""
