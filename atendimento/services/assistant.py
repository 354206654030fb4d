from __future__ import annotations

import hashlib
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime

from atendimento.ai.service import AssistantAI
from atendimento.core.config import (
    DUPLICATE_TEXT_WINDOW_SECONDS,
    HANDOFF_FAILURE_THRESHOLD,
    HANDOFF_MIN_CONFIDENCE,
    SUMMARY_EVERY_N_MESSAGES,
)
from atendimento.core.metrics import turn_metrics
from atendimento.core.request_context import clear_request_context, set_request_context
from atendimento.fsm.actions import ActionType, OrchestratorResult
from atendimento.fsm.engine import TurnInput, orchestrate
from atendimento.fsm.states import CART_OPEN_STATES, ConversationState, is_valid_transition
from atendimento.orders.service import OrderProviderService
from atendimento.schemas.catalog import CatalogEntry
from atendimento.schemas.conversation import MODE_DELIVERY, Conversation, utcnow
from atendimento.schemas.extraction import Correction, PartialUpdate
from atendimento.services.company_data import CachedCatalogSource, CatalogSource, StaticCatalogSource
from atendimento.services.conversation_timers import ConversationTimers
from atendimento.services.conversations import ConversationRepository, conversation_key
from atendimento.services.field_extraction import detect_correction
from atendimento.services.inbound_dedup import InboundDeduplicator
from atendimento.services.message_buffer import MessageBuffer
from atendimento.services.order_commit import commit_order
from atendimento.services.replies import PIPELINE_ERROR_TEXT, build_reply, render_reply, unresolved_prefix
from atendimento.services.snapshot_store import DebouncedSnapshotWriter, Snapshot
from atendimento.services.tenants import AgentSettingsRegistry, TenantDirectory, TenantRuntime
from atendimento.services.text_normalization import normalize
from atendimento.services.transaction_merge import find_line, merge, missing_fields, recalculate_total
from atendimento.whatsapp.base import InboundMessage
from atendimento.whatsapp.service import WhatsAppService

logger = logging.getLogger(__name__)

S = ConversationState


@dataclass
class TurnOutcome:
    status: str
    conversation_id: str
    state: ConversationState | None = None
    action: ActionType | None = None
    reply: str | None = None
    sent: bool = False


def text_hash(phone: str, text: str) -> str:
    return hashlib.sha256(f"{phone}|{normalize(text)}".encode("utf-8")).hexdigest()


def _restore(conversation: Conversation, backup: Conversation) -> None:
    for name in Conversation.model_fields:
        setattr(conversation, name, getattr(backup, name))


class OrderAssistant:
    """Pipeline de atendimento: buffer, extração, orquestração, pedido e resposta."""

    def __init__(
        self,
        *,
        repository: ConversationRepository | None = None,
        tenants: TenantDirectory | None = None,
        settings: AgentSettingsRegistry | None = None,
        ai: AssistantAI | None = None,
        whatsapp: WhatsAppService | None = None,
        providers: OrderProviderService | None = None,
        catalog_source: CatalogSource | None = None,
        dedup: InboundDeduplicator | None = None,
        duplicate_window_seconds: int = DUPLICATE_TEXT_WINDOW_SECONDS,
    ) -> None:
        self.repository = repository or ConversationRepository()
        self.settings = settings or AgentSettingsRegistry()
        self.tenants = tenants or TenantDirectory(self.settings)
        self.ai = ai or AssistantAI()
        self.whatsapp = whatsapp or WhatsAppService()
        self.providers = providers or OrderProviderService()
        self.catalog_source = catalog_source or CachedCatalogSource(StaticCatalogSource())
        self.dedup = dedup or InboundDeduplicator()
        self.duplicate_window_seconds = duplicate_window_seconds
        self.buffer = MessageBuffer(self._on_grouped)
        self.timers = ConversationTimers(self._on_timer)
        self.snapshots: DebouncedSnapshotWriter | None = None
        self._runtimes: dict[str, TenantRuntime] = {}

    # snapshot

    def export_state(self) -> Snapshot:
        snapshot = self.repository.export_snapshot()
        snapshot["agent_settings"] = self.settings.dump()
        return snapshot

    def load_state(self, snapshot: Snapshot) -> int:
        self.settings.load(snapshot.get("agent_settings") or {})
        return self.repository.load_snapshot(snapshot)

    def schedule_snapshot(self) -> None:
        if self.snapshots is not None:
            self.snapshots.schedule()

    # entrada

    def runtime_for(self, conversation: Conversation) -> TenantRuntime:
        return self._runtimes.get(conversation.id) or self.tenants.resolve(conversation.tenant_id)

    def handle_inbound(self, message: InboundMessage, runtime: TenantRuntime) -> dict[str, str]:
        """Aplica dedup e controle de contato e enfileira o texto no buffer."""
        text = (message.text or "").strip()
        if not text:
            logger.info("Mensagem sem texto ignorada", extra={"phone": message.phone})
            return {"status": "ignored"}

        if self.dedup.seen(message.message_id):
            turn_metrics.observe_duplicate(runtime.id)
            logger.info("Mensagem repetida do webhook ignorada", extra={"phone": message.phone})
            return {"status": "duplicate"}

        control = self.repository.get_contact_control(runtime.id, message.phone)
        if control.blocked:
            logger.info("Contato bloqueado", extra={"phone": message.phone})
            return {"status": "blocked"}

        conversation = self.repository.get_or_create(
            runtime.id,
            message.phone,
            remote_jid=message.remote_jid,
            contact_name=message.contact_name or "",
        )
        if control.paused:
            self.repository.append_message(conversation, "user", text, {"paused": True})
            self.repository.touch(conversation)
            self.schedule_snapshot()
            logger.info("Contato pausado: mensagem registrada sem resposta", extra={"phone": message.phone})
            return {"status": "paused", "conversation_id": conversation.id}

        self._runtimes[conversation.id] = runtime
        self.buffer.add(conversation.id, text, window_ms=runtime.buffer_window_ms)
        return {"status": "queued", "conversation_id": conversation.id}

    async def _on_grouped(self, key: str, text: str) -> None:
        conversation = self.repository.get(key)
        if conversation is None:
            return
        await self.run_turn(self.runtime_for(conversation), key, text)

    # turno

    def _is_duplicate(self, conversation: Conversation, digest: str, now: datetime) -> bool:
        if conversation.last_processed_hash != digest:
            return False
        if not self.duplicate_window_seconds:
            return True
        if conversation.last_processed_at is None:
            return False
        return (now - conversation.last_processed_at).total_seconds() <= self.duplicate_window_seconds

    async def run_turn(self, runtime: TenantRuntime, key: str, text: str) -> TurnOutcome:
        conversation = self.repository.get(key)
        if conversation is None:
            return TurnOutcome(status="missing", conversation_id=key)

        started = time.perf_counter()
        now = utcnow()
        set_request_context(tenant_id=runtime.id, conversation_id=key, turn_id=uuid.uuid4().hex[:12])
        try:
            digest = text_hash(conversation.phone, text)
            if self._is_duplicate(conversation, digest, now):
                turn_metrics.observe_duplicate(runtime.id)
                logger.info("Mensagem agrupada repetida; nada a fazer")
                return TurnOutcome(status="duplicate", conversation_id=key, state=conversation.state)

            self.timers.cancel_all(key)
            backup = conversation.model_copy(deep=True)
            conversation.last_processed_hash = digest
            conversation.last_processed_at = now
            logger.info("Processando mensagem agrupada: %s", text[:200], extra={"phone": conversation.phone})
            try:
                outcome = await self._process(runtime, conversation, text, now)
            except Exception:
                logger.exception("Erro no pipeline da conversa")
                outcome = await self._fail_turn(runtime, conversation, backup, text)

            turn_metrics.observe_turn(
                runtime.id,
                (time.perf_counter() - started) * 1000,
                failed=outcome.status == "error",
            )
            if outcome.state in CART_OPEN_STATES:
                self.timers.schedule(key)
            self.schedule_snapshot()
            return outcome
        finally:
            clear_request_context()

    async def _fail_turn(
        self,
        runtime: TenantRuntime,
        conversation: Conversation,
        backup: Conversation,
        text: str,
    ) -> TurnOutcome:
        _restore(conversation, backup)
        conversation.consecutive_failures += 1
        self.repository.touch(conversation)
        self.repository.append_message(conversation, "user", text)
        sent = await self.whatsapp.send_text(runtime, conversation.phone, PIPELINE_ERROR_TEXT, conversation.remote_jid)
        self.repository.append_message(
            conversation, "assistant", PIPELINE_ERROR_TEXT, {"action": ActionType.PIPELINE_ERROR.value}
        )
        return TurnOutcome(
            status="error",
            conversation_id=conversation.id,
            state=conversation.state,
            action=ActionType.PIPELINE_ERROR,
            reply=PIPELINE_ERROR_TEXT,
            sent=sent,
        )

    async def _ensure_catalog(self, runtime: TenantRuntime, conversation: Conversation) -> list[CatalogEntry]:
        if not conversation.catalog:
            conversation.catalog = await self.catalog_source.load_catalog(runtime)
        return list(conversation.catalog)

    @staticmethod
    def _applicable_correction(conversation: Conversation, text: str) -> Correction | None:
        correction = detect_correction(text)
        transaction = conversation.transaction
        if correction is None or not transaction.items:
            return None
        if conversation.state == S.FINALIZING:
            return correction
        if correction.target and find_line(transaction, correction.target) is not None:
            return correction
        return None

    @staticmethod
    def _filter_update(state: ConversationState, update: PartialUpdate) -> PartialUpdate:
        if state in {S.CONFIRMED, S.HUMAN_HANDOFF}:
            return PartialUpdate()
        if state == S.WAITING_PAYMENT:
            return PartialUpdate(payment=update.payment)
        return update

    async def _apply_delivery_fee(self, runtime: TenantRuntime, conversation: Conversation, changed: set[str]) -> None:
        transaction = conversation.transaction
        if transaction.mode != MODE_DELIVERY or not ({"mode", "address.neighborhood"} & changed):
            return
        fee = await self.catalog_source.load_delivery_fee(runtime, transaction.address)
        if fee is not None and fee != transaction.delivery_fee_cents:
            transaction.delivery_fee_cents = fee
            transaction.total_amount_cents = recalculate_total(transaction)

    async def _process(
        self,
        runtime: TenantRuntime,
        conversation: Conversation,
        text: str,
        now: datetime,
    ) -> TurnOutcome:
        self.repository.touch(conversation, now)
        self.repository.reopen_if_closed(conversation, now)
        previous_state = conversation.state
        count_before = conversation.message_count
        customer = self.repository.get_customer(runtime.id, conversation.phone)
        self.repository.append_message(conversation, "user", text)

        classification = await self.ai.classify(
            previous_state.value, text, {"summary": conversation.context_summary}
        )
        logger.info(
            "Mensagem classificada",
            extra={"intent": classification.intent.value, "confidence": classification.confidence},
        )

        catalog = await self._ensure_catalog(runtime, conversation)
        correction = self._applicable_correction(conversation, text)
        update = await self.ai.extract(
            text,
            [entry.name for entry in catalog],
            allow_fallback=classification.requires_extraction,
        )
        if correction is not None:
            update = update.model_copy(update={"items": []})
        update = self._filter_update(previous_state, update)

        merged = merge(conversation, update, catalog)
        await self._apply_delivery_fee(runtime, conversation, merged.changed)

        turn = TurnInput(
            classification=classification,
            raw_text=text,
            today=now.astimezone().date().isoformat(),
            update=update,
            changed=frozenset(merged.changed),
            correction=correction,
            customer=customer,
            require_address=runtime.require_address,
            handoff_failure_threshold=HANDOFF_FAILURE_THRESHOLD,
            handoff_min_confidence=HANDOFF_MIN_CONFIDENCE,
        )
        decision = orchestrate(conversation, turn)
        if not is_valid_transition(previous_state.value, decision.next_state.value):
            logger.warning(
                "Transição inválida descartada",
                extra={"previous_state": previous_state.value, "next_state": decision.next_state.value},
            )
            decision = OrchestratorResult(next_state=previous_state, action=ActionType.CLARIFY)

        if decision.is_commit:
            committed = await commit_order(conversation, runtime, decision, catalog, self.providers, self.repository)
            if not committed.ok:
                decision = committed.as_result(("items",) if committed.next_state == S.ADDING_ITEM else ())

        self.repository.set_state(conversation, decision.next_state, now)
        logger.info(
            "Orquestração concluída",
            extra={
                "previous_state": previous_state.value,
                "next_state": decision.next_state.value,
                "action": decision.action.value,
                "missing": list(decision.missing),
            },
        )

        reply = await build_reply(self.ai, runtime, conversation, decision, text)
        if merged.unresolved and decision.action != ActionType.ORDER_ITEMS_NOT_FOUND:
            reply = f"{unresolved_prefix(merged.unresolved)} {reply}"

        sent = False
        notify = True
        if decision.next_state == S.HUMAN_HANDOFF:
            if previous_state != S.HUMAN_HANDOFF:
                turn_metrics.observe_handoff(runtime.id)
            notify = not conversation.handoff_notified
            conversation.handoff_notified = True
        if notify:
            sent = await self.whatsapp.send_text(runtime, conversation.phone, reply, conversation.remote_jid)
            self.repository.append_message(
                conversation,
                "assistant",
                reply,
                {
                    "action": decision.action.value,
                    "intent": classification.intent.value,
                    "previous_state": previous_state.value,
                    "next_state": decision.next_state.value,
                    "sent": sent,
                },
            )

        await self._maybe_summarize(conversation, count_before)
        self.repository.remember_turn(customer, text)
        return TurnOutcome(
            status="processed",
            conversation_id=conversation.id,
            state=conversation.state,
            action=decision.action,
            reply=reply if notify else None,
            sent=sent,
        )

    async def _maybe_summarize(self, conversation: Conversation, count_before: int) -> None:
        every = max(SUMMARY_EVERY_N_MESSAGES, 1)
        if count_before // every == conversation.message_count // every:
            return
        messages = [{"role": m.role, "content": m.content} for m in conversation.messages[-10:]]
        summary = await self.ai.summarize(messages)
        if summary:
            conversation.context_summary = summary

    # timers

    async def _on_timer(self, key: str, action: ActionType) -> None:
        conversation = self.repository.get(key)
        if conversation is None or conversation.state not in CART_OPEN_STATES:
            return
        runtime = self.runtime_for(conversation)
        if action == ActionType.CART_EXPIRED:
            conversation.reset_flow()
            self.repository.set_state(conversation, S.INIT)
            result = OrchestratorResult(next_state=S.INIT, action=action)
        else:
            missing = missing_fields(
                conversation.transaction,
                items_phase_complete=conversation.items_phase_complete,
                require_address=runtime.require_address,
            )
            result = OrchestratorResult(
                next_state=conversation.state,
                action=action,
                missing=tuple(missing),
                target_field=missing[0] if missing else None,
            )
        reply = render_reply(runtime, conversation, result)
        sent = await self.whatsapp.send_text(runtime, conversation.phone, reply, conversation.remote_jid)
        self.repository.append_message(conversation, "assistant", reply, {"action": action.value, "sent": sent})
        logger.info("Timer da conversa disparado", extra={"action": action.value, "state": conversation.state.value})
        self.schedule_snapshot()

    # operador

    def release_handoff(self, tenant_id: str, phone: str) -> Conversation | None:
        conversation = self.repository.release_handoff(tenant_id, phone)
        if conversation is not None:
            self.schedule_snapshot()
        return conversation

    def delete_conversation(self, tenant_id: str, phone: str) -> bool:
        key = conversation_key(tenant_id, phone)
        self.buffer.cancel(key)
        self.timers.cancel_all(key)
        self._runtimes.pop(key, None)
        removed = self.repository.delete_conversation(tenant_id, phone)
        self.schedule_snapshot()
        return removed

    def clear_customer_and_session(self, tenant_id: str, phone: str) -> bool:
        key = conversation_key(tenant_id, phone)
        self.buffer.cancel(key)
        self.timers.cancel_all(key)
        self._runtimes.pop(key, None)
        removed = self.repository.clear_customer_and_session(tenant_id, phone)
        self.schedule_snapshot()
        return removed

    async def shutdown(self) -> None:
        self.buffer.cancel_all()
        self.timers.shutdown()
        if self.snapshots is not None:
            self.snapshots.flush()
