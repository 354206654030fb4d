from __future__ import annotations

from typing import Any, Protocol


class LLMCapability(Protocol):
    name: str

    async def classify(self, state: str, text: str, context: dict[str, Any]) -> dict[str, Any]:
        ...

    async def extract(self, text: str, menu_hint: list[str]) -> dict[str, Any]:
        ...

    async def generate_reply(self, context: dict[str, Any]) -> str | None:
        ...

    async def summarize(self, messages: list[dict[str, str]]) -> str | None:
        ...
