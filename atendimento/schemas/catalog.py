from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class CatalogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    unit_price_cents: int = Field(0, ge=0)
    category: str | None = None
