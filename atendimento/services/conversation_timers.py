from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from atendimento.core.config import CART_CANCEL_MS, FOLLOWUP_NUDGE_MS
from atendimento.fsm.actions import ActionType

logger = logging.getLogger(__name__)

TimerCallback = Callable[[str, ActionType], Awaitable[None]]


class ConversationTimers:
    """Lembrete e cancelamento de carrinho parado, um par de tasks por conversa.

    Qualquer turno novo cancela os timers da chave antes de reagendar, então
    um timer nunca age sobre uma conversa que já avançou.
    """

    def __init__(
        self,
        callback: TimerCallback,
        *,
        nudge_ms: int = FOLLOWUP_NUDGE_MS,
        cancel_ms: int = CART_CANCEL_MS,
    ) -> None:
        self.callback = callback
        self.nudge_seconds = max(nudge_ms, 0) / 1000
        self.cancel_seconds = max(cancel_ms, 0) / 1000
        self._tasks: dict[str, list[asyncio.Task]] = {}

    def schedule(self, key: str) -> None:
        self.cancel_all(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        tasks: list[asyncio.Task] = []
        if self.nudge_seconds and self.nudge_seconds < self.cancel_seconds:
            tasks.append(loop.create_task(self._fire(key, self.nudge_seconds, ActionType.FOLLOWUP_NUDGE)))
        if self.cancel_seconds:
            tasks.append(loop.create_task(self._fire(key, self.cancel_seconds, ActionType.CART_EXPIRED)))
        self._tasks[key] = tasks

    async def _fire(self, key: str, delay: float, action: ActionType) -> None:
        await asyncio.sleep(delay)
        if action == ActionType.CART_EXPIRED:
            self._tasks.pop(key, None)
        try:
            await self.callback(key, action)
        except Exception:
            logger.exception("Falha no timer da conversa", extra={"action": action.value})

    def cancel_all(self, key: str) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in self._tasks.pop(key, []):
            if task is not current and not task.done():
                task.cancel()

    def scheduled(self, key: str) -> bool:
        return any(not task.done() for task in self._tasks.get(key, []))

    def shutdown(self) -> None:
        for key in list(self._tasks):
            self.cancel_all(key)


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
