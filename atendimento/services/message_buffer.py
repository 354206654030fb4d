from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from atendimento.core.config import MESSAGE_BUFFER_MS

logger = logging.getLogger(__name__)

GroupedHandler = Callable[[str, str], Awaitable[None]]


@dataclass
class _PendingBuffer:
    chunks: list[str] = field(default_factory=list)
    window_seconds: float = MESSAGE_BUFFER_MS / 1000
    task: asyncio.Task | None = None


class MessageBuffer:
    """Debounce por conversa com execução single-flight.

    Cada fragmento novo reinicia o timer da chave. Quando o timer dispara
    os fragmentos viram uma única mensagem agrupada; se a chave ainda está
    processando o turno anterior, o texto volta para a fila e o timer é
    rearmado.
    """

    def __init__(self, handler: GroupedHandler, *, window_ms: int = MESSAGE_BUFFER_MS) -> None:
        self.handler = handler
        self.window_ms = window_ms
        self._buffers: dict[str, _PendingBuffer] = {}
        self._processing: set[str] = set()
        self._running: set[asyncio.Task] = set()

    def add(self, key: str, text: str, *, window_ms: int | None = None) -> int:
        """Enfileira um fragmento. Precisa de um event loop rodando."""
        cleaned = (text or "").strip()
        buffer = self._buffers.setdefault(key, _PendingBuffer())
        if cleaned:
            buffer.chunks.append(cleaned)
        buffer.window_seconds = max(window_ms if window_ms is not None else self.window_ms, 0) / 1000
        self._arm(key, buffer)
        logger.info("Mensagem enfileirada no buffer (%s partes)", len(buffer.chunks))
        return len(buffer.chunks)

    def _arm(self, key: str, buffer: _PendingBuffer) -> None:
        current = asyncio.current_task()
        if buffer.task is not None and buffer.task is not current and not buffer.task.done():
            buffer.task.cancel()
        task = asyncio.get_running_loop().create_task(self._fire_after(key, buffer.window_seconds))
        buffer.task = task
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _fire_after(self, key: str, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._fire(key)

    async def _fire(self, key: str) -> None:
        buffer = self._buffers.get(key)
        if buffer is None:
            return
        if key in self._processing:
            logger.info("Turno em andamento; mensagem agrupada volta para a fila")
            self._arm(key, buffer)
            return

        self._buffers.pop(key, None)
        grouped = "\n".join(buffer.chunks)
        if not grouped:
            return

        self._processing.add(key)
        try:
            await self.handler(key, grouped)
        except Exception:
            logger.exception("Falha ao processar mensagem agrupada")
        finally:
            self._processing.discard(key)

    async def flush(self, key: str) -> None:
        """Dispara imediatamente o buffer da chave, sem esperar a janela."""
        buffer = self._buffers.get(key)
        if buffer is None:
            return
        if buffer.task is not None and not buffer.task.done():
            buffer.task.cancel()
            buffer.task = None
        await self._fire(key)

    def cancel(self, key: str) -> None:
        buffer = self._buffers.pop(key, None)
        if buffer is not None and buffer.task is not None:
            buffer.task.cancel()

    def pending_chunks(self, key: str) -> list[str]:
        buffer = self._buffers.get(key)
        return list(buffer.chunks) if buffer else []

    def is_processing(self, key: str) -> bool:
        return key in self._processing

    @contextmanager
    def hold(self, key: str):
        """Marca a chave como em processamento fora do fluxo do timer."""
        self._processing.add(key)
        try:
            yield
        finally:
            self._processing.discard(key)

    async def drain(self) -> None:
        """Aguarda todos os timers e turnos em andamento."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    def cancel_all(self) -> None:
        for key in list(self._buffers):
            self.cancel(key)
