from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Sequence

from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import (
    ADDRESS_FIELDS,
    MODE_DELIVERY,
    REQUIRED_ADDRESS_FIELDS,
    CartItem,
    Conversation,
    Transaction,
)
from atendimento.schemas.extraction import Correction, PartialUpdate
from atendimento.services.catalog_resolution import resolve
from atendimento.services.text_normalization import canonical_tokens, normalize

# Campos escalares que pedem confirmação quando um valor existente é trocado.
CONFIRMABLE_FIELDS = {"mode", "payment", "customer_name"} | {f"address.{name}" for name in ADDRESS_FIELDS}

_NON_INFORMATIVE = re.compile(
    r"^(?:como (?:eu )?(?:falei|disse|informei)(?: antes)?|ja (?:falei|disse|informei)|o mesmo|a mesma|"
    r"mesmo endereco|mesmo de sempre|nao informado|nao sei|sei la|nenhum|nenhuma|n a|na|x)$"
)


@dataclass
class MergeResult:
    changed: set[str] = field(default_factory=set)
    unresolved: list[str] = field(default_factory=list)

    @property
    def items_changed(self) -> bool:
        return "items" in self.changed


def _clean(value: str | None) -> str:
    return re.sub(r"\s+", " ", (value or "").strip())


def is_informative(value: str | None) -> bool:
    cleaned = _clean(value)
    if not cleaned:
        return False
    return not _NON_INFORMATIVE.match(normalize(cleaned))


def recalculate_total(transaction: Transaction) -> int:
    items_total = sum(
        (item.unit_price_cents or 0) * item.quantity for item in transaction.items if item.quantity > 0
    )
    fee = transaction.delivery_fee_cents if transaction.mode == MODE_DELIVERY else 0
    return items_total + max(fee, 0)


def _same_line(line: CartItem, name: str, code: str | None) -> bool:
    if line.catalog_code and code:
        return line.catalog_code == code
    if normalize(line.name) == normalize(name):
        return True
    return canonical_tokens(line.name) == canonical_tokens(name)


def find_line(transaction: Transaction, name: str) -> CartItem | None:
    target = normalize(name)
    if not target:
        return None
    canonical_target = " ".join(canonical_tokens(name))
    for line in transaction.items:
        line_name = normalize(line.name)
        if target in line_name or line_name in target:
            return line
        canonical_line = " ".join(canonical_tokens(line.name))
        if canonical_target in canonical_line or canonical_line in canonical_target:
            return line
    return None


def _mark_changed(conversation: Conversation, result: MergeResult, field_name: str, previous: str) -> None:
    conversation.confirmed[field_name] = False
    result.changed.add(field_name)
    if previous and field_name in CONFIRMABLE_FIELDS and not conversation.pending_field_confirmation:
        conversation.pending_field_confirmation = field_name


def _merge_items(
    conversation: Conversation,
    update: PartialUpdate,
    catalog: Sequence[CatalogEntry],
    result: MergeResult,
) -> bool:
    transaction = conversation.transaction
    changed = False

    for item in update.items or []:
        entry = resolve(item.name, catalog) if catalog else None
        if catalog and entry is None:
            result.unresolved.append(item.name)
            continue

        name = entry.name if entry else _clean(item.name)
        code = entry.code if entry else None
        existing = next((line for line in transaction.items if _same_line(line, name, code)), None)
        if existing is None:
            transaction.items.append(
                CartItem(
                    name=name,
                    quantity=item.quantity,
                    catalog_code=code,
                    unit_price_cents=entry.unit_price_cents if entry else None,
                )
            )
            changed = True
            continue

        quantity = existing.quantity + item.quantity if item.incremental else item.quantity
        if quantity != existing.quantity:
            existing.quantity = quantity
            changed = True

    for name in update.remove_items or []:
        line = find_line(transaction, name)
        if line is not None:
            transaction.items.remove(line)
            changed = True

    return changed


def merge(
    conversation: Conversation,
    update: PartialUpdate,
    catalog: Sequence[CatalogEntry] = (),
) -> MergeResult:
    """Aplica uma atualização parcial sobre o pedido da conversa.

    Quantidades seguem a política "set" (a última menção substitui) exceto
    quando o item vem marcado como incremental. Qualquer mudança no conjunto
    de itens reabre a fase de itens e a sugestão de adicional.
    """
    transaction = conversation.transaction
    result = MergeResult()

    if _merge_items(conversation, update, catalog, result):
        conversation.confirmed["items"] = False
        conversation.items_phase_complete = False
        conversation.upsell_done = False
        result.changed.add("items")

    for field_name in ("customer_name", "mode", "payment"):
        value = getattr(update, field_name)
        if not is_informative(value):
            continue
        value = _clean(value)
        previous = getattr(transaction, field_name)
        if value != previous:
            setattr(transaction, field_name, value)
            _mark_changed(conversation, result, field_name, previous)

    if is_informative(update.notes):
        notes = _clean(update.notes)
        if notes != transaction.notes:
            transaction.notes = notes
            conversation.confirmed["notes"] = False
            result.changed.add("notes")

    if update.address is not None:
        for key, value in update.address.found().items():
            if not is_informative(value):
                continue
            value = _clean(value)
            previous = getattr(transaction.address, key)
            if value != previous:
                setattr(transaction.address, key, value)
                _mark_changed(conversation, result, f"address.{key}", previous)

    if not transaction.mode and (transaction.address.street_name or transaction.address.neighborhood):
        transaction.mode = MODE_DELIVERY
        conversation.confirmed["mode"] = False
        result.changed.add("mode")

    if transaction.mode != MODE_DELIVERY:
        transaction.delivery_fee_cents = 0

    if result.changed:
        transaction.total_amount_cents = recalculate_total(transaction)
    return result


def apply_correction(transaction: Transaction, correction: Correction, *, fallback_to_all: bool = True) -> list[str]:
    """Aplica uma correção de quantidade e devolve os nomes das linhas alteradas."""
    if correction.target:
        line = find_line(transaction, correction.target)
        if line is not None:
            if line.quantity == correction.new_qty:
                return []
            line.quantity = correction.new_qty
            transaction.total_amount_cents = recalculate_total(transaction)
            return [line.name]
        if not fallback_to_all:
            return []

    touched: list[str] = []
    for line in transaction.items:
        if line.quantity > correction.new_qty:
            line.quantity = correction.new_qty
            touched.append(line.name)
    if touched:
        transaction.total_amount_cents = recalculate_total(transaction)
    return touched


def clear_field(transaction: Transaction, field_name: str) -> None:
    if field_name == "items":
        transaction.items = []
    elif field_name.startswith("address."):
        key = field_name.split(".", 1)[1]
        if key in ADDRESS_FIELDS:
            setattr(transaction.address, key, "")
    elif field_name in {"mode", "payment", "customer_name", "notes"}:
        setattr(transaction, field_name, "")
        if field_name == "mode":
            transaction.delivery_fee_cents = 0
    transaction.total_amount_cents = recalculate_total(transaction)


def missing_fields(
    transaction: Transaction,
    *,
    items_phase_complete: bool,
    require_address: bool = True,
) -> list[str]:
    """Lista ordenada do que falta: itens, modo, endereço (só delivery), pagamento."""
    if not transaction.items:
        return ["items"]
    if not items_phase_complete:
        return ["items"]

    missing: list[str] = []
    if not transaction.mode:
        missing.append("mode")
    if transaction.mode == MODE_DELIVERY and require_address:
        for key in REQUIRED_ADDRESS_FIELDS:
            if not _clean(getattr(transaction.address, key)):
                missing.append(f"address.{key}")
    if not transaction.payment:
        missing.append("payment")
    return missing
