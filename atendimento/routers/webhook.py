import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from atendimento.deps import get_assistant
from atendimento.services.assistant import OrderAssistant
from atendimento.whatsapp.base import sanitize_payload
from atendimento.whatsapp.evolution_provider import parse_evolution_webhook

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook/whatsapp")
async def evolution_webhook(request: Request, assistant: OrderAssistant = Depends(get_assistant)):
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="JSON inválido")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload inválido")

    message = parse_evolution_webhook(payload)
    if message is None:
        logger.debug("Evento ignorado: %s", sanitize_payload(payload))
        return {"status": "ignored"}

    instance = message.instance or request.query_params.get("instance")
    runtime = assistant.tenants.resolve(request.query_params.get("tenant_id"), instance)
    logger.info(
        "WhatsApp recebido: message_id=%s text='%s'",
        message.message_id,
        message.text[:200],
        extra={"tenant_id": runtime.id, "phone": message.phone},
    )
    return assistant.handle_inbound(message, runtime)
