"""Nudges and closes AI conversations the customer walked away from."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from atende.database import ensure_timezone, utcnow
from atende.logging_config import LoggerAdapter, get_logger
from atende.models import (
    Appointment,
    AuditLog,
    ChannelSession,
    Conversation,
    CustomerInterest,
    Deal,
    Order,
)
from atende.schemas.webhook import WebhookEvent
from atende.services import audit_service
from atende.services.audit_service import AuditAction
from atende.services.conversation_service import last_message, recent_history, save_message
from atende.services.crm_service import ADVANCED_STAGES
from atende.services.customer_memory_service import MemoryUpdate
from atende.services.state_machine import ConversationStatus, apply_transition

logger = get_logger("timeout_monitor")

RECENT_WORK_PERIOD = timedelta(hours=1)
ACTIVE_APPOINTMENT_STATUSES = ("PENDING", "CONFIRMED", "COMPLETED")
COMPLETION_AUDIT_ACTIONS = (AuditAction.AI_CONVERSATION_CLOSED.value, AuditAction.AI_TRANSFER_TO_HUMAN.value)


class TimeoutAction(str, Enum):
    WARNING_SENT = "WARNING_SENT"
    CLOSED = "CLOSED"
    CLOSED_SILENT = "CLOSED_SILENT"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


@dataclass
class TimeoutResult:
    conversation_id: object
    action: TimeoutAction
    reason: Optional[str] = None


def _first_name(name: Optional[str]) -> str:
    return name.split()[0] if name and name.strip() else ""


def warning_message(customer_name: Optional[str]) -> str:
    name = _first_name(customer_name)
    greeting = f"Oi, {name}!" if name else "Oi!"
    return f"{greeting} Ainda está por aí? 😊 Se precisar de mais alguma coisa, é só me chamar."


def closing_message(customer_name: Optional[str]) -> str:
    name = _first_name(customer_name)
    suffix = f", {name}" if name else ""
    return (
        f"Como não tivemos retorno, vou encerrar este atendimento por aqui{suffix}. "
        "Quando quiser, é só mandar uma mensagem que continuamos! 👋"
    )


def warning_key(conversation: Conversation) -> str:
    """One warning per inactivity period: the period starts at the last message."""
    last = ensure_timezone(conversation.last_message_at)
    return f"inactivity-warning:{conversation.id}:{last.isoformat()}"


class ConversationTimeoutMonitor:
    def __init__(
        self,
        runtime,
        *,
        warning_after: Optional[timedelta] = None,
        close_after: Optional[timedelta] = None,
        max_per_run: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = runtime.settings
        self.runtime = runtime
        self.warning_after = warning_after or timedelta(minutes=settings.warning_after_minutes)
        self.close_after = close_after or timedelta(minutes=settings.close_after_minutes)
        self.max_per_run = max_per_run or settings.max_conversations_per_run
        self._clock = clock

    def candidates(self, db: Session, now: datetime) -> List[Conversation]:
        return (
            db.query(Conversation)
            .filter(
                Conversation.status == ConversationStatus.AI_HANDLING.value,
                Conversation.last_message_at <= now - self.warning_after,
            )
            .order_by(Conversation.last_message_at)
            .limit(self.max_per_run)
            .all()
        )

    async def run(self, db: Session) -> List[TimeoutResult]:
        now = self._clock()
        results = []
        for conversation in self.candidates(db, now):
            try:
                result = await self.check_conversation(db, conversation, now)
            except Exception as exc:
                db.rollback()
                logger.error(
                    "Timeout check failed",
                    extra={"context": {"conversation_id": str(conversation.id), "error": str(exc)}},
                )
                result = TimeoutResult(conversation.id, TimeoutAction.ERROR, str(exc))
            results.append(result)

        summary = {action.value: 0 for action in TimeoutAction}
        for result in results:
            summary[result.action.value] += 1
        logger.info("Timeout monitor run finished", extra={"context": {"checked": len(results), **summary}})
        return results

    def ai_work_completed(self, db: Session, conversation: Conversation, now: datetime) -> Optional[str]:
        """Name of the first sign that the AI already got somewhere, or None."""
        since = now - RECENT_WORK_PERIOD
        if (
            db.query(Order.id)
            .filter(
                Order.company_id == conversation.company_id,
                Order.status != "CANCELLED",
                or_(
                    Order.conversation_id == conversation.id,
                    and_(Order.customer_phone == conversation.customer_phone, Order.created_at >= since),
                ),
            )
            .first()
        ):
            return "order"
        if (
            db.query(Appointment.id)
            .filter(
                Appointment.conversation_id == conversation.id,
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                Appointment.created_at >= since,
            )
            .first()
        ):
            return "appointment"
        if (
            db.query(AuditLog.id)
            .filter(
                AuditLog.entity_id == conversation.id,
                AuditLog.action.in_(COMPLETION_AUDIT_ACTIONS),
                AuditLog.created_at >= since,
            )
            .first()
        ):
            return "audit"
        if (
            db.query(CustomerInterest.id)
            .filter(CustomerInterest.conversation_id == conversation.id, CustomerInterest.created_at >= since)
            .first()
        ):
            return "interest"
        if (
            db.query(Deal.id)
            .filter(
                Deal.company_id == conversation.company_id,
                Deal.customer_phone == conversation.customer_phone,
                Deal.stage.in_(ADVANCED_STAGES),
                Deal.updated_at >= since,
            )
            .first()
        ):
            return "deal"
        return None

    @staticmethod
    def warning_sent(db: Session, conversation: Conversation) -> bool:
        return (
            db.query(AuditLog.id)
            .filter(
                AuditLog.action == AuditAction.INACTIVITY_WARNING_SENT.value,
                AuditLog.dedupe_key == warning_key(conversation),
            )
            .first()
            is not None
        )

    async def check_conversation(self, db: Session, conversation: Conversation, now: datetime) -> TimeoutResult:
        log = LoggerAdapter(logger, {"conversation_id": str(conversation.id)})
        session: ChannelSession = conversation.session
        if session is None or session.status != "CONNECTED":
            return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, "session_disconnected")

        last_activity = ensure_timezone(conversation.last_message_at)
        inactive_for = now - last_activity
        past_close = inactive_for >= self.close_after

        completed_by = self.ai_work_completed(db, conversation, now)
        if completed_by:
            if not past_close:
                return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, f"ai_work_completed:{completed_by}")
            if not self._close(db, conversation, last_activity, silent=True, reason=completed_by):
                return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, "state_changed")
            log.info("Conversation closed silently", context={"reason": completed_by})
            return TimeoutResult(conversation.id, TimeoutAction.CLOSED_SILENT, completed_by)

        latest = last_message(db, conversation.id)
        if latest is not None and latest.sender == "CUSTOMER":
            return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, "last_message_from_customer")

        if self.warning_sent(db, conversation):
            if not past_close:
                return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, "warning_already_sent")
            text = closing_message(conversation.customer_name)
            if not self._close(db, conversation, last_activity, silent=False, reason="inactivity"):
                return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, "state_changed")
            save_message(db, conversation, sender="AI", content=text, touch=False)
            db.commit()
            self._schedule_memory_update(db, conversation)
            try:
                await self.runtime.send_text(session.session_name, self._recipient(conversation), text)
            except Exception as exc:
                log.error("Closing message not delivered", context={"error": str(exc)})
                return TimeoutResult(conversation.id, TimeoutAction.ERROR, "close_message_failed")
            log.info("Conversation closed for inactivity")
            return TimeoutResult(conversation.id, TimeoutAction.CLOSED)

        return await self._warn(db, conversation, session, log, late=past_close)

    async def _warn(self, db: Session, conversation: Conversation, session: ChannelSession, log, *, late: bool) -> TimeoutResult:
        entry = audit_service.record_once(
            db,
            dedupe_key=warning_key(conversation),
            company_id=conversation.company_id,
            action=AuditAction.INACTIVITY_WARNING_SENT,
            entity_id=conversation.id,
            changes={"late": late},
        )
        if entry is None:
            return TimeoutResult(conversation.id, TimeoutAction.SKIPPED, "warning_already_sent")
        db.commit()

        text = warning_message(conversation.customer_name)
        try:
            await self.runtime.send_text(session.session_name, self._recipient(conversation), text)
        except Exception as exc:
            # release the claim so the next run can try again
            db.delete(entry)
            db.commit()
            log.error("Inactivity warning not delivered", context={"error": str(exc)})
            return TimeoutResult(conversation.id, TimeoutAction.ERROR, "warning_failed")

        save_message(db, conversation, sender="AI", content=text, touch=False)
        db.commit()
        log.info("Inactivity warning sent", context={"late": late})
        return TimeoutResult(conversation.id, TimeoutAction.WARNING_SENT, "late" if late else None)

    def _close(self, db: Session, conversation: Conversation, last_activity: datetime, *, silent: bool, reason: str) -> bool:
        moved = apply_transition(
            db,
            conversation.id,
            ConversationStatus.CLOSED,
            expected=(ConversationStatus.AI_HANDLING,),
            unchanged_since=last_activity,
        )
        if not moved:
            db.rollback()
            return False
        audit_service.record(
            db,
            company_id=conversation.company_id,
            action=AuditAction.CONVERSATION_CLOSED_INACTIVITY,
            entity_id=conversation.id,
            changes={"silent": silent, "reason": reason},
            actor="SYSTEM",
        )
        db.commit()
        self.runtime.webhooks.emit(
            conversation.company_id,
            WebhookEvent.CONVERSATION_CLOSED,
            {
                "conversationId": str(conversation.id),
                "customerPhone": conversation.customer_phone,
                "closedBy": "INACTIVITY",
                "silent": silent,
            },
        )
        return True

    def _schedule_memory_update(self, db: Session, conversation: Conversation) -> None:
        exchange = recent_history(db, conversation.id, self.runtime.settings.history_messages)
        self.runtime.tasks.spawn(
            self._update_memory(conversation.company_id, conversation.id, conversation.customer_phone, conversation.customer_name, exchange),
            name="memory:close",
            context={"conversation_id": str(conversation.id)},
        )

    async def _update_memory(self, company_id, conversation_id, phone: str, name: Optional[str], exchange: List[dict]) -> None:
        memory_service = self.runtime.memory
        summary = await memory_service.summarize_exchange(exchange, name)
        db = self.runtime.session_factory()
        try:
            await memory_service.update(
                db,
                MemoryUpdate(
                    company_id=company_id,
                    customer_phone=phone,
                    conversation_id=conversation_id,
                    exchange_summary=summary,
                    customer_name=name,
                ),
            )
        finally:
            db.close()

    @staticmethod
    def _recipient(conversation: Conversation) -> str:
        return conversation.customer_whatsapp_id or conversation.customer_phone
