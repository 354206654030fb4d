from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class Intent(str, Enum):
    GREETING = "GREETING"
    NEW_ORDER = "NEW_ORDER"
    REPEAT_ORDER = "REPEAT_ORDER"
    MENU = "MENU"
    QUESTION = "QUESTION"
    MANAGE_ORDER = "MANAGE_ORDER"
    CANCEL = "CANCEL"
    PAYMENT = "PAYMENT"
    SUPPORT = "SUPPORT"
    HUMAN = "HUMAN"
    SPAM = "SPAM"


class Classification(BaseModel):
    intent: Intent = Intent.QUESTION
    requires_extraction: bool = False
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    handoff: bool = False

    @field_validator("intent", mode="before")
    @classmethod
    def _coerce_intent(cls, value: Any) -> Any:
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized in Intent.__members__:
                return normalized
            return Intent.QUESTION
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> Any:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(max(number, 0.0), 1.0)
