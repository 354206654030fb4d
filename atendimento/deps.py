# atendimento/deps.py
from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, Request, status

from atendimento.core.config import ADMIN_API_TOKEN
from atendimento.services.assistant import OrderAssistant

logger = logging.getLogger(__name__)


def get_assistant(request: Request) -> OrderAssistant:
    assistant = getattr(request.app.state, "assistant", None)
    if assistant is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Assistente não inicializado")
    return assistant


def require_operator(
    request: Request,
    x_admin_token: str | None = Header(default=None),
) -> None:
    """Protege as rotas de operador quando ADMIN_API_TOKEN está configurado."""
    if not ADMIN_API_TOKEN:
        return
    if not x_admin_token or not hmac.compare_digest(x_admin_token, ADMIN_API_TOKEN):
        logger.warning("Acesso negado: endpoint=%s %s", request.method, request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token de operador inválido")
