from fastapi import APIRouter, Depends, HTTPException

from atendimento.deps import get_assistant, require_operator
from atendimento.schemas.admin import SimulatorRequest
from atendimento.services.assistant import OrderAssistant
from atendimento.whatsapp.base import canonical_phone

router = APIRouter(prefix="/simulator", dependencies=[Depends(require_operator)])


@router.post("/mensagem")
async def simular(body: SimulatorRequest, assistant: OrderAssistant = Depends(get_assistant)):
    phone = canonical_phone(body.phone)
    if not phone:
        raise HTTPException(status_code=400, detail='Campo "phone" inválido')

    runtime = assistant.tenants.resolve(body.tenant_id, body.instance)
    conversa = assistant.repository.get_or_create(runtime.id, phone)
    if assistant.buffer.is_processing(conversa.id):
        raise HTTPException(status_code=409, detail="Conversa em processamento")
    with assistant.buffer.hold(conversa.id):
        resultado = await assistant.run_turn(runtime, conversa.id, body.text)

    return {
        "status": resultado.status,
        "estado": conversa.state.value,
        "acao": resultado.action.value if resultado.action else None,
        "resposta": resultado.reply,
        "pedido": conversa.transaction.model_dump(mode="json"),
    }
