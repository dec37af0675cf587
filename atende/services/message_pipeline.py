"""Handles one inbound customer message end to end."""

import json
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from atende.logging_config import get_logger
from atende.models import ChannelSession, Company, Conversation, Message, Order
from atende.schemas.job import InboundJobPayload
from atende.schemas.webhook import WebhookEvent
from atende.services import audit_service
from atende.services.audit_service import AuditAction
from atende.services.conversation_service import (
    MEDIA_PLACEHOLDER,
    conversation_event,
    find_message_by_external_id,
    get_or_create_conversation,
    message_content,
    message_event,
    normalize_message_type,
    normalize_phone,
    recent_history,
    record_token_usage,
    save_message,
)
from atende.services.customer_memory_service import MemoryUpdate
from atende.services.knowledge_service import build_knowledge_context
from atende.services.orchestrator import OrchestratorResult
from atende.services.prompt_service import build_system_prompt
from atende.services.state_machine import ConversationStatus
from atende.services.tools import Attachment, ToolContext

logger = get_logger("message_pipeline")

PAYMENT_PROOF_ACK = (
    "Recebemos seu comprovante! 🙌 Nossa equipe vai conferir o pagamento e já te retorna com a confirmação."
)


class SessionNotFoundError(Exception):
    """The job names a gateway session this service does not know."""


class InvalidJobError(ValueError):
    pass


@dataclass
class PipelineOutcome:
    conversation_id: object
    message_id: object
    conversation_created: bool = False
    replied: bool = False
    skipped: Optional[str] = None
    functions_called: List[str] = field(default_factory=list)
    tokens: int = 0


class MessagePipeline:
    def __init__(self, runtime):
        self.runtime = runtime
        self.settings = runtime.settings

    def _webhook(self, company_id, event: WebhookEvent, data: dict) -> None:
        self.runtime.webhooks.emit(company_id, event, data)

    def _realtime_message(self, conversation: Conversation, message: Message) -> None:
        self.runtime.tasks.spawn(
            self.runtime.realtime.message_created(conversation.company_id, conversation.id, message_event(message)),
            name="realtime:message",
        )

    @staticmethod
    def _find_session(db: Session, payload: InboundJobPayload) -> ChannelSession:
        session = db.query(ChannelSession).filter(ChannelSession.session_name == payload.session).first()
        if session is None and payload.sessionId:
            session = db.query(ChannelSession).filter(ChannelSession.session_name == payload.sessionId).first()
        if session is None:
            raise SessionNotFoundError(f"Session not found: {payload.session}")
        return session

    async def process(self, db: Session, payload: InboundJobPayload, *, job_id=None) -> PipelineOutcome:
        session = self._find_session(db, payload)
        data = payload.messageData
        phone = normalize_phone(data.from_)
        if not phone:
            raise InvalidJobError(f"Inbound message without sender: {data.from_!r}")

        message_type = normalize_message_type(data.type)
        content = message_content(data.body, message_type)
        media_url = data.mediaUrl
        if not media_url and message_type != "TEXT" and content == MEDIA_PLACEHOLDER and data.body:
            media_url = data.body
        if data.messageId:
            external_id = f"{payload.session}:{data.messageId}"
        else:
            external_id = f"job:{job_id}" if job_id else None

        resolution = get_or_create_conversation(
            db,
            session=session,
            customer_phone=phone,
            first_message=content,
            customer_whatsapp_id=data.from_,
            customer_name=data.notifyName,
        )
        conversation = resolution.conversation
        company: Company = conversation.company
        if resolution.created:
            self._webhook(company.id, WebhookEvent.NEW_CONVERSATION, conversation_event(conversation))
            self.runtime.tasks.spawn(
                self.runtime.realtime.conversation_created(company.id, conversation_event(conversation)),
                name="realtime:conversation",
            )

        message = find_message_by_external_id(db, external_id) if external_id else None
        duplicate = message is not None
        if not duplicate:
            message = save_message(
                db,
                conversation,
                sender="CUSTOMER",
                content=content,
                message_type=message_type,
                media_url=media_url,
                external_id=external_id,
                count_unread=True,
            )
            if data.notifyName and not conversation.customer_name:
                conversation.customer_name = data.notifyName
            db.commit()
            self._realtime_message(conversation, message)
            self._webhook(
                company.id,
                WebhookEvent.MESSAGE_RECEIVED,
                {"conversationId": str(conversation.id), "customerPhone": phone, "message": message_event(message)},
            )

        outcome = PipelineOutcome(
            conversation_id=conversation.id,
            message_id=message.id,
            conversation_created=resolution.created,
        )
        log_context = {"conversation_id": str(conversation.id), "job_id": str(job_id) if job_id else None}

        reply_key = f"{external_id}:reply" if external_id else None
        if duplicate and reply_key:
            existing_reply = find_message_by_external_id(db, reply_key)
            if existing_reply is not None:
                # a previous attempt answered but failed to deliver; the reply may have changed the status
                await self._deliver_text(session, conversation, existing_reply.content)
                outcome.replied = True
                outcome.skipped = "redelivered"
                return outcome

        if message_type == "IMAGE" and media_url and not duplicate:
            if await self._handle_payment_proof(db, session, conversation, media_url):
                outcome.skipped = "payment_proof"
                return outcome

        reason = self._skip_reason(company, conversation, message_type, content)
        if reason:
            outcome.skipped = reason
            logger.info("AI reply skipped", extra={"context": {**log_context, "reason": reason}})
            return outcome

        await self._reply(db, session, company, conversation, content, reply_key, outcome)
        return outcome

    @staticmethod
    def _skip_reason(company: Company, conversation: Conversation, message_type: str, content: str) -> Optional[str]:
        if not company.ai_enabled:
            return "ai_disabled"
        if conversation.status != ConversationStatus.AI_HANDLING.value:
            return f"status_{conversation.status.lower()}"
        if conversation.agent_id is None:
            return "no_agent"
        if message_type != "TEXT":
            return "not_text"
        if not content.strip():
            return "empty"
        return None

    async def _handle_payment_proof(
        self, db: Session, session: ChannelSession, conversation: Conversation, media_url: str
    ) -> bool:
        order = (
            db.query(Order)
            .filter(
                Order.company_id == conversation.company_id,
                Order.customer_phone == conversation.customer_phone,
                Order.status == "AWAITING_PAYMENT",
            )
            .order_by(Order.created_at.desc())
            .first()
        )
        if order is None:
            return False

        order.status = "PROOF_SENT"
        order.payment_proof_url = media_url
        audit_service.record(
            db,
            company_id=conversation.company_id,
            action=AuditAction.PAYMENT_PROOF_RECEIVED,
            entity="Order",
            entity_id=order.id,
            changes={"conversation_id": str(conversation.id)},
            actor="CUSTOMER",
        )
        ack = save_message(db, conversation, sender="AI", content=PAYMENT_PROOF_ACK)
        db.commit()
        logger.info(
            "Payment proof received",
            extra={"context": {"order_id": str(order.id), "conversation_id": str(conversation.id)}},
        )
        self._realtime_message(conversation, ack)
        await self._deliver_text(session, conversation, PAYMENT_PROOF_ACK)
        return True

    async def _reply(
        self,
        db: Session,
        session: ChannelSession,
        company: Company,
        conversation: Conversation,
        content: str,
        reply_key: Optional[str],
        outcome: PipelineOutcome,
    ) -> None:
        agent = conversation.agent
        history = recent_history(db, conversation.id, self.settings.history_messages)
        knowledge = await build_knowledge_context(db, agent.id, content, self.runtime.embed)
        memory = self.runtime.memory.get(db, company.id, conversation.customer_phone)
        prompt = build_system_prompt(
            company=company,
            agent=agent,
            knowledge_context=knowledge,
            memory_block=self.runtime.memory.format_for_prompt(memory),
            customer_name=conversation.customer_name,
        )
        ctx = ToolContext(
            db=db,
            company=company,
            conversation=conversation,
            agent_id=agent.id,
            sink=self._webhook,
        )

        result: OrchestratorResult = await self.runtime.orchestrator.run(prompt, history, ctx)
        outcome.functions_called = result.functions_called
        outcome.tokens = result.total_tokens
        if not result.reply:
            logger.warning(
                "Completion returned an empty reply",
                extra={"context": {"conversation_id": str(conversation.id), "functions": result.functions_called}},
            )
            return

        reply = save_message(db, conversation, sender="AI", content=result.reply, external_id=reply_key)
        db.commit()
        self._realtime_message(conversation, reply)
        try:
            record_token_usage(
                db, company.id, input_tokens=result.input_tokens, output_tokens=result.output_tokens
            )
        except Exception as exc:
            db.rollback()
            logger.error("Token usage update failed", extra={"context": {"error": str(exc)}})

        await self._deliver_text(session, conversation, result.reply)
        outcome.replied = True

        if result.attachment is not None:
            await self._deliver_attachment(session, conversation, result.attachment)

        self.runtime.tasks.spawn(
            self._update_memory(
                company_id=company.id,
                conversation_id=conversation.id,
                customer_phone=conversation.customer_phone,
                customer_name=conversation.customer_name,
                exchange=[*history, {"role": "assistant", "content": result.reply}],
                products=_mentioned_products(result),
            ),
            name="memory:update",
            context={"conversation_id": str(conversation.id)},
        )

    @staticmethod
    def _recipient(conversation: Conversation) -> str:
        return conversation.customer_whatsapp_id or conversation.customer_phone

    async def _deliver_text(self, session: ChannelSession, conversation: Conversation, text: str) -> None:
        sent = await self.runtime.send_text(session.session_name, self._recipient(conversation), text)
        if not sent:
            logger.warning(
                "Gateway did not acknowledge reply",
                extra={"context": {"conversation_id": str(conversation.id)}},
            )

    async def _deliver_attachment(self, session: ChannelSession, conversation: Conversation, attachment: Attachment) -> None:
        recipient = self._recipient(conversation)
        try:
            if attachment.kind == "image":
                await self.runtime.send_image(session.session_name, recipient, attachment.url, attachment.title)
            else:
                await self.runtime.send_file(
                    session.session_name,
                    recipient,
                    attachment.url,
                    attachment.file_name or "documento",
                    attachment.title,
                )
        except Exception as exc:
            logger.error(
                "Attachment delivery failed",
                extra={"context": {"conversation_id": str(conversation.id), "kind": attachment.kind, "error": str(exc)}},
            )

    async def _update_memory(
        self,
        *,
        company_id,
        conversation_id,
        customer_phone: str,
        customer_name: Optional[str],
        exchange: List[dict],
        products: List[str],
    ) -> None:
        memory_service = self.runtime.memory
        summary = await memory_service.summarize_exchange(exchange, customer_name)
        db = self.runtime.session_factory()
        try:
            await memory_service.update(
                db,
                MemoryUpdate(
                    company_id=company_id,
                    customer_phone=customer_phone,
                    conversation_id=conversation_id,
                    exchange_summary=summary,
                    message_count=2,
                    customer_name=customer_name,
                    products=products,
                ),
            )
        finally:
            db.close()


def _mentioned_products(result: OrchestratorResult) -> List[str]:
    products: List[str] = []
    for tool in result.tools:
        try:
            arguments = json.loads(tool.arguments or "{}")
        except ValueError:
            continue
        if not isinstance(arguments, dict):
            continue
        name = arguments.get("produto") or arguments.get("termo")
        if name and name not in products:
            products.append(name)
    return products
