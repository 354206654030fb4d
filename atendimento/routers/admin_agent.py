from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from atendimento.deps import get_assistant, require_operator
from atendimento.schemas.admin import AgentSettingsUpdate, ContactControlUpdate, PhoneRequest
from atendimento.schemas.conversation import Conversation
from atendimento.services.assistant import OrderAssistant
from atendimento.services.conversations import conversation_key
from atendimento.whatsapp.base import canonical_phone

router = APIRouter(prefix="/api/agent", tags=["agent"], dependencies=[Depends(require_operator)])


def _phone_or_400(raw: str | None) -> str:
    phone = canonical_phone(raw or "")
    if not phone:
        raise HTTPException(status_code=400, detail='Parâmetro "phone" é obrigatório')
    return phone


def _conversation_row(assistant: OrderAssistant, conversation: Conversation) -> dict:
    last = conversation.messages[-1] if conversation.messages else None
    control = assistant.repository.get_contact_control(conversation.tenant_id, conversation.phone)
    return {
        "phone": conversation.phone,
        "name": conversation.contact_name or conversation.transaction.customer_name,
        "remote_jid": conversation.remote_jid,
        "state": conversation.state.value,
        "last_activity_at": conversation.last_activity_at.isoformat(),
        "message_count": conversation.message_count,
        "last_message": {"role": last.role, "content": last.content} if last else None,
        "paused": control.paused,
        "blocked": control.blocked,
    }


@router.get("/settings")
async def get_settings(
    tenant_id: Optional[str] = None,
    instance: Optional[str] = None,
    assistant: OrderAssistant = Depends(get_assistant),
):
    runtime = assistant.tenants.resolve(tenant_id, instance)
    return {"tenant_id": runtime.id, "settings": assistant.settings.get(runtime.id)}


@router.post("/settings")
async def update_settings(body: AgentSettingsUpdate, assistant: OrderAssistant = Depends(get_assistant)):
    runtime = assistant.tenants.resolve(body.tenant_id, body.instance)
    settings = assistant.settings.update(runtime.id, body.model_dump(exclude={"tenant_id", "instance"}))
    assistant.schedule_snapshot()
    return {"tenant_id": runtime.id, "settings": settings}


@router.get("/conversations")
async def list_conversations(
    tenant_id: Optional[str] = None,
    instance: Optional[str] = None,
    search: str = "",
    limit: int = Query(default=200, ge=1, le=200),
    assistant: OrderAssistant = Depends(get_assistant),
):
    runtime = assistant.tenants.resolve(tenant_id, instance)
    term = search.strip().lower()
    rows = []
    for conversation in assistant.repository.list_conversations(runtime.id):
        row = _conversation_row(assistant, conversation)
        if term and term not in row["phone"] and term not in (row["name"] or "").lower():
            continue
        rows.append(row)
    return {"tenant_id": runtime.id, "conversations": rows[:limit]}


@router.get("/session")
async def get_session(
    phone: str,
    tenant_id: Optional[str] = None,
    instance: Optional[str] = None,
    assistant: OrderAssistant = Depends(get_assistant),
):
    canonical = _phone_or_400(phone)
    runtime = assistant.tenants.resolve(tenant_id, instance)
    key = conversation_key(runtime.id, canonical)
    conversation = assistant.repository.get(key)
    if conversation is None:
        return {"found": False, "tenant_id": runtime.id, "phone": canonical, "key": key}
    return {
        "found": True,
        "tenant_id": runtime.id,
        "phone": canonical,
        "key": key,
        "state": conversation.state.value,
        "context_summary": conversation.context_summary,
        "message_count": conversation.message_count,
        "consecutive_failures": conversation.consecutive_failures,
        "last_activity_at": conversation.last_activity_at.isoformat(),
        "transaction": conversation.transaction.model_dump(mode="json"),
        "recent_messages": [m.model_dump(mode="json") for m in conversation.messages[-12:]],
    }


@router.delete("/conversation")
async def delete_conversation(
    phone: str,
    tenant_id: Optional[str] = None,
    instance: Optional[str] = None,
    assistant: OrderAssistant = Depends(get_assistant),
):
    canonical = _phone_or_400(phone)
    runtime = assistant.tenants.resolve(tenant_id, instance)
    removed = assistant.delete_conversation(runtime.id, canonical)
    if not removed:
        raise HTTPException(status_code=404, detail="Conversa não encontrada")
    return {"tenant_id": runtime.id, "phone": canonical, "removed": True}


@router.post("/conversation/clear")
async def clear_conversation(body: PhoneRequest, assistant: OrderAssistant = Depends(get_assistant)):
    canonical = _phone_or_400(body.phone)
    runtime = assistant.tenants.resolve(body.tenant_id, body.instance)
    removed = assistant.clear_customer_and_session(runtime.id, canonical)
    return {"tenant_id": runtime.id, "phone": canonical, "removed": removed}


@router.post("/handoff/release")
async def release_handoff(body: PhoneRequest, assistant: OrderAssistant = Depends(get_assistant)):
    canonical = _phone_or_400(body.phone)
    runtime = assistant.tenants.resolve(body.tenant_id, body.instance)
    conversation = assistant.release_handoff(runtime.id, canonical)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversa não encontrada")
    return {"tenant_id": runtime.id, "phone": canonical, "state": conversation.state.value}


@router.get("/contact-control")
async def get_contact_control(
    phone: str,
    tenant_id: Optional[str] = None,
    instance: Optional[str] = None,
    assistant: OrderAssistant = Depends(get_assistant),
):
    canonical = _phone_or_400(phone)
    runtime = assistant.tenants.resolve(tenant_id, instance)
    control = assistant.repository.get_contact_control(runtime.id, canonical)
    return {"tenant_id": runtime.id, "phone": canonical, "control": control.model_dump(mode="json")}


@router.post("/contact-control")
async def set_contact_control(body: ContactControlUpdate, assistant: OrderAssistant = Depends(get_assistant)):
    canonical = _phone_or_400(body.phone)
    runtime = assistant.tenants.resolve(body.tenant_id, body.instance)
    control = assistant.repository.set_contact_control(
        runtime.id, canonical, paused=body.paused, blocked=body.blocked
    )
    assistant.schedule_snapshot()
    return {"tenant_id": runtime.id, "phone": canonical, "control": control.model_dump(mode="json")}
