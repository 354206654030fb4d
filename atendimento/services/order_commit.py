from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from atendimento.core.metrics import turn_metrics
from atendimento.fsm.actions import ActionType, OrchestratorResult
from atendimento.fsm.states import ConversationState
from atendimento.orders.base import OrderDraft
from atendimento.orders.service import OrderProviderService
from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import PAYMENT_PIX, Conversation, Transaction
from atendimento.services.catalog_resolution import resolve_batch
from atendimento.services.conversations import ConversationRepository
from atendimento.services.tenants import TenantRuntime
from atendimento.services.text_normalization import normalize
from atendimento.services.transaction_merge import recalculate_total
from atendimento.services.validators import TOTAL_EPSILON_CENTS, total_matches, validate_final_order

logger = logging.getLogger(__name__)


class CommitStatus(str, Enum):
    CREATED = "CREATED"
    ALREADY_CREATED = "ALREADY_CREATED"
    SKIPPED = "SKIPPED"
    TOTAL_CORRECTED = "TOTAL_CORRECTED"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNRESOLVED_ITEMS = "UNRESOLVED_ITEMS"
    PROVIDER_FAILED = "PROVIDER_FAILED"
    CHANGE_NOT_SENT = "CHANGE_NOT_SENT"


_OK_STATUSES = frozenset({CommitStatus.CREATED, CommitStatus.ALREADY_CREATED, CommitStatus.SKIPPED})


@dataclass
class CommitOutcome:
    status: CommitStatus
    next_state: ConversationState
    action: ActionType
    details: dict[str, Any] = field(default_factory=dict)
    order_id: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in _OK_STATUSES

    def as_result(self, missing: tuple[str, ...] = ()) -> OrchestratorResult:
        return OrchestratorResult(
            next_state=self.next_state,
            action=self.action,
            missing=missing,
            details=dict(self.details),
        )


def _reopen_items(conversation: Conversation) -> None:
    conversation.items_phase_complete = False
    conversation.confirmed["items"] = False


def _total_corrected(conversation: Conversation, previous_total: int) -> CommitOutcome:
    transaction = conversation.transaction
    transaction.total_amount_cents = recalculate_total(transaction)
    conversation.consecutive_failures += 1
    logger.warning(
        "Total divergente corrigido antes do envio: %s -> %s",
        previous_total,
        transaction.total_amount_cents,
    )
    return CommitOutcome(
        status=CommitStatus.TOTAL_CORRECTED,
        next_state=ConversationState.FINALIZING,
        action=ActionType.ORDER_TOTAL_CORRECTED,
        details={"previous_total": previous_total, "total": transaction.total_amount_cents},
    )


def _order_key(transaction: Transaction) -> tuple:
    lines = sorted((item.catalog_code or normalize(item.name), item.quantity) for item in transaction.items)
    return (
        tuple(lines),
        transaction.mode,
        transaction.payment,
        tuple(transaction.address.model_dump().values()),
        transaction.total_amount_cents,
    )


def same_order(current: Transaction, submitted: Transaction) -> bool:
    return _order_key(current) == _order_key(submitted)


def _change_not_sent(conversation: Conversation, submitted: Transaction) -> CommitOutcome:
    # O provedor só conhece o pedido enviado; o carrinho volta a ele.
    conversation.transaction = submitted.model_copy(deep=True)
    conversation.items_phase_complete = True
    conversation.pending_field_confirmation = None
    next_state = (
        ConversationState.WAITING_PAYMENT if submitted.payment == PAYMENT_PIX else ConversationState.CONFIRMED
    )
    logger.warning(
        "Alteração após o pedido registrado não enviada",
        extra={"order_id": submitted.order_id},
    )
    return CommitOutcome(
        status=CommitStatus.CHANGE_NOT_SENT,
        next_state=next_state,
        action=ActionType.ORDER_CHANGE_NOT_SENT,
        details={"order_id": submitted.order_id},
        order_id=submitted.order_id,
    )


async def commit_order(
    conversation: Conversation,
    runtime: TenantRuntime,
    decision: OrchestratorResult,
    catalog: list[CatalogEntry],
    providers: OrderProviderService,
    repository: ConversationRepository,
) -> CommitOutcome:
    """Valida, reprecifica e envia o pedido. O order_id é gravado uma única vez.

    Cada etapa é uma barreira: total divergente, validação, itens fora do
    cardápio e falha do provedor interrompem o envio sem marcar o pedido.
    """
    transaction = conversation.transaction

    if transaction.order_id:
        submitted = conversation.submitted_transaction
        if submitted is not None and not same_order(transaction, submitted):
            return _change_not_sent(conversation, submitted)
        return CommitOutcome(
            status=CommitStatus.ALREADY_CREATED,
            next_state=decision.next_state,
            action=decision.action,
            order_id=transaction.order_id,
        )

    if runtime.segment != "restaurant":
        logger.info("Segmento sem envio de pedido: %s", runtime.segment)
        return CommitOutcome(status=CommitStatus.SKIPPED, next_state=decision.next_state, action=decision.action)

    if not total_matches(transaction):
        return _total_corrected(conversation, transaction.total_amount_cents)

    validation = validate_final_order(transaction, require_address=runtime.require_address)
    if not validation.valid:
        conversation.consecutive_failures += 1
        _reopen_items(conversation)
        logger.warning("Pedido inválido: %s", validation.first_error)
        return CommitOutcome(
            status=CommitStatus.VALIDATION_FAILED,
            next_state=ConversationState.ADDING_ITEM,
            action=ActionType.ORDER_VALIDATION_FAILED,
            details={"error": validation.first_error, "errors": list(validation.errors)},
        )

    resolution = resolve_batch(transaction.items, catalog)
    if resolution.unresolved:
        conversation.consecutive_failures += 1
        _reopen_items(conversation)
        logger.warning("Itens fora do cardápio: %s", ", ".join(resolution.unresolved))
        return CommitOutcome(
            status=CommitStatus.UNRESOLVED_ITEMS,
            next_state=ConversationState.ADDING_ITEM,
            action=ActionType.ORDER_ITEMS_NOT_FOUND,
            details={"unresolved": list(resolution.unresolved)},
        )

    previous_total = transaction.total_amount_cents
    for item, line in zip(transaction.items, resolution.resolved):
        item.catalog_code = line.entry.code
        item.unit_price_cents = line.entry.unit_price_cents
    if abs(recalculate_total(transaction) - previous_total) > TOTAL_EPSILON_CENTS:
        return _total_corrected(conversation, previous_total)

    draft = OrderDraft.from_conversation(conversation, resolution.resolved, transaction.total_amount_cents)
    logger.info(
        "Enviando pedido ao provedor (%s itens)",
        len(draft.lines),
        extra={"provider": runtime.order_provider},
    )
    result = await providers.submit(runtime, draft)

    if not result.ok:
        conversation.consecutive_failures += 1
        if result.unresolved_items:
            _reopen_items(conversation)
            return CommitOutcome(
                status=CommitStatus.UNRESOLVED_ITEMS,
                next_state=ConversationState.ADDING_ITEM,
                action=ActionType.ORDER_ITEMS_NOT_FOUND,
                details={"unresolved": list(result.unresolved_items)},
            )
        logger.error("Pedido não registrado: %s", result.error, extra={"provider": result.provider})
        return CommitOutcome(
            status=CommitStatus.PROVIDER_FAILED,
            next_state=ConversationState.FINALIZING,
            action=ActionType.ORDER_PROVIDER_UNAVAILABLE,
            details={"error": result.error},
        )

    transaction.order_id = result.order_id or f"{result.provider or 'pedido'}-{int(time.time() * 1000)}"
    conversation.consecutive_failures = 0
    conversation.submitted_transaction = transaction.model_copy(deep=True)
    repository.record_order(conversation)
    turn_metrics.observe_order(conversation.tenant_id)
    logger.info("Pedido criado", extra={"provider": result.provider, "order_id": transaction.order_id})
    return CommitOutcome(
        status=CommitStatus.CREATED,
        next_state=decision.next_state,
        action=decision.action,
        order_id=transaction.order_id,
    )
