from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class TenantScoped(BaseModel):
    tenant_id: Optional[str] = None
    instance: Optional[str] = None


class PhoneRequest(TenantScoped):
    phone: str = Field(min_length=1)


class SimulatorRequest(PhoneRequest):
    text: str = Field(min_length=1)


class AgentSettingsUpdate(TenantScoped):
    buffer_window_ms: Optional[int] = None
    greeting_message: Optional[str] = None


class ContactControlUpdate(PhoneRequest):
    paused: Optional[bool] = None
    blocked: Optional[bool] = None
