from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ExtractedItem(BaseModel):
    name: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1)
    incremental: bool = False


class AddressUpdate(BaseModel):
    street_name: Optional[str] = None
    street_number: Optional[str] = None
    neighborhood: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None

    def found(self) -> dict[str, str]:
        return {key: value for key, value in self.model_dump().items() if value}


class PartialUpdate(BaseModel):
    """Campos encontrados em uma única mensagem agrupada.

    Campos ausentes ficam como None e nunca recebem valor padrão.
    """

    items: Optional[List[ExtractedItem]] = None
    remove_items: Optional[List[str]] = None
    mode: Optional[str] = None
    payment: Optional[str] = None
    customer_name: Optional[str] = None
    notes: Optional[str] = None
    address: Optional[AddressUpdate] = None

    def is_empty(self) -> bool:
        return not any(
            (
                self.items,
                self.remove_items,
                self.mode,
                self.payment,
                self.customer_name,
                self.notes,
                self.address and self.address.found(),
            )
        )

    def has_logistics(self) -> bool:
        return bool(self.mode or self.payment or (self.address and self.address.found()))


class Correction(BaseModel):
    is_correction: bool = True
    type: str = "quantity"
    new_qty: int = Field(..., ge=1)
    target: Optional[str] = None
