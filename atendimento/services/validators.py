from __future__ import annotations

from dataclasses import dataclass, field

from atendimento.schemas.conversation import (
    MODE_DELIVERY,
    MODE_TAKEOUT,
    REQUIRED_ADDRESS_FIELDS,
    VALID_PAYMENTS,
    Address,
    Transaction,
)
from atendimento.services.transaction_merge import recalculate_total

TOTAL_EPSILON_CENTS = 1

_ADDRESS_LABELS = {
    "street_name": "rua",
    "street_number": "número",
    "neighborhood": "bairro",
}


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    total_mismatch: bool = False

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def first_error(self) -> str | None:
        return self.errors[0] if self.errors else None


def missing_address_fields(address: Address) -> list[str]:
    return [key for key in REQUIRED_ADDRESS_FIELDS if not (getattr(address, key) or "").strip()]


def is_payment_valid(payment: str) -> tuple[bool, str | None]:
    value = (payment or "").strip()
    if not value:
        return False, "Forma de pagamento não informada"
    if value not in VALID_PAYMENTS:
        return False, f"Forma de pagamento desconhecida: {value}"
    return True, None


def total_matches(transaction: Transaction) -> bool:
    return abs(recalculate_total(transaction) - transaction.total_amount_cents) <= TOTAL_EPSILON_CENTS


def validate_final_order(transaction: Transaction, *, require_address: bool = True) -> ValidationResult:
    result = ValidationResult()

    if not transaction.items:
        result.errors.append("Nenhum item no pedido")
    for item in transaction.items:
        if item.quantity <= 0:
            result.errors.append(f'Quantidade inválida para "{item.name or "item"}"')

    if transaction.mode not in {MODE_DELIVERY, MODE_TAKEOUT}:
        result.errors.append("Modalidade (retirada/entrega) não definida")

    if transaction.mode == MODE_DELIVERY and require_address:
        missing = missing_address_fields(transaction.address)
        if missing:
            labels = ", ".join(_ADDRESS_LABELS[key] for key in missing)
            result.errors.append(f"Endereço incompleto, faltam: {labels}")

    valid_payment, reason = is_payment_valid(transaction.payment)
    if not valid_payment:
        result.errors.append(reason)

    if transaction.items and not total_matches(transaction):
        expected = recalculate_total(transaction)
        result.total_mismatch = True
        result.errors.append(
            f"Total divergente: calculado={expected}, declarado={transaction.total_amount_cents}"
        )

    return result
