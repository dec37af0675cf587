import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atende.database import ensure_timezone, utcnow
from atende.logging_config import get_logger
from atende.models import ChannelSession, Conversation, Message, TokenUsage
from atende.services.agent_router import RoutingDecision, route_conversation
from atende.services.state_machine import ConversationStatus

logger = get_logger("conversation_service")

MEDIA_PLACEHOLDER = "[Mídia]"

_TYPE_MAP = {
    "chat": "TEXT",
    "text": "TEXT",
    "image": "IMAGE",
    "audio": "AUDIO",
    "ptt": "AUDIO",
    "video": "VIDEO",
    "document": "DOCUMENT",
    "sticker": "STICKER",
    "location": "LOCATION",
}

_ROLE_BY_SENDER = {"CUSTOMER": "user", "AI": "assistant", "HUMAN": "assistant"}


@dataclass
class ConversationResolution:
    conversation: Conversation
    created: bool
    routing: Optional[RoutingDecision] = None


def normalize_phone(raw: str) -> str:
    """'5511999990000@c.us' -> '5511999990000'"""
    return re.sub(r"\D", "", (raw or "").split("@")[0])


def normalize_message_type(raw: Optional[str]) -> str:
    return _TYPE_MAP.get((raw or "chat").strip().lower(), "TEXT")


def message_content(body: Optional[str], message_type: str) -> str:
    body = (body or "").strip()
    if message_type == "TEXT":
        return body
    # media bodies are base64 blobs or URLs, not text worth storing
    if not body or len(body) > 500 or body.startswith(("http://", "https://", "data:")):
        return MEDIA_PLACEHOLDER
    return body


def find_open_conversation(db: Session, company_id, customer_phone: str) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.company_id == company_id,
            Conversation.customer_phone == customer_phone,
            Conversation.status != ConversationStatus.CLOSED.value,
        )
        .first()
    )


def get_or_create_conversation(
    db: Session,
    *,
    session: ChannelSession,
    customer_phone: str,
    first_message: str,
    customer_whatsapp_id: Optional[str] = None,
    customer_name: Optional[str] = None,
) -> ConversationResolution:
    """Find the customer's open conversation or create one (insert-or-get).

    The partial unique index on open conversations makes a concurrent
    creator's insert fail; the loser re-reads and uses the winner's row.
    """
    existing = find_open_conversation(db, session.company_id, customer_phone)
    if existing:
        return ConversationResolution(conversation=existing, created=False)

    decision = route_conversation(db, session.company_id, first_message)
    status = ConversationStatus.AI_HANDLING if decision.agent else ConversationStatus.OPEN
    conversation = Conversation(
        company_id=session.company_id,
        session_id=session.id,
        agent_id=decision.agent_id,
        customer_phone=customer_phone,
        customer_whatsapp_id=customer_whatsapp_id,
        customer_name=customer_name,
        status=status.value,
        last_message_at=utcnow(),
    )
    try:
        with db.begin_nested():
            db.add(conversation)
    except IntegrityError:
        winner = find_open_conversation(db, session.company_id, customer_phone)
        if winner is None:
            raise
        logger.info(
            "Conversation created concurrently, reusing",
            extra={"context": {"conversation_id": str(winner.id)}},
        )
        return ConversationResolution(conversation=winner, created=False)

    db.commit()
    logger.info(
        "Conversation created",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "agent_id": str(decision.agent_id) if decision.agent_id else None,
                "status": status.value,
            }
        },
    )
    return ConversationResolution(conversation=conversation, created=True, routing=decision)


def save_message(
    db: Session,
    conversation: Conversation,
    *,
    sender: str,
    content: str,
    message_type: str = "TEXT",
    media_url: Optional[str] = None,
    external_id: Optional[str] = None,
    touch: bool = True,
    count_unread: bool = False,
) -> Message:
    """Append a message; creation times strictly increase within a conversation.

    ``touch`` moves the conversation's last-message time. Flushes, does not commit.
    """
    latest = (
        db.query(func.max(Message.created_at)).filter(Message.conversation_id == conversation.id).scalar()
    )
    created_at = utcnow()
    latest = ensure_timezone(latest)
    if latest is not None and created_at <= latest:
        created_at = latest + timedelta(microseconds=1)

    message = Message(
        conversation_id=conversation.id,
        sender=sender,
        content=content,
        type=message_type,
        media_url=media_url,
        external_id=external_id,
        is_read=sender != "CUSTOMER",
        created_at=created_at,
    )
    db.add(message)
    db.flush()
    if touch:
        conversation.last_message_at = created_at
    if count_unread:
        conversation.unread_count = (conversation.unread_count or 0) + 1
    return message


def find_message_by_external_id(db: Session, external_id: str) -> Optional[Message]:
    return db.query(Message).filter(Message.external_id == external_id).first()


def recent_history(db: Session, conversation_id, limit: int = 8) -> List[dict]:
    """Last ``limit`` messages as chat turns, oldest first."""
    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {"role": _ROLE_BY_SENDER.get(message.sender, "user"), "content": message.content}
        for message in reversed(messages)
        if message.content
    ]


def last_message(db: Session, conversation_id) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .first()
    )


def message_event(message: Message) -> dict:
    return {
        "id": str(message.id),
        "sender": message.sender,
        "content": message.content,
        "type": message.type,
        "mediaUrl": message.media_url,
        "createdAt": ensure_timezone(message.created_at).isoformat() if message.created_at else None,
    }


def conversation_event(conversation: Conversation) -> dict:
    return {
        "id": str(conversation.id),
        "customerPhone": conversation.customer_phone,
        "customerName": conversation.customer_name,
        "status": conversation.status,
        "agentId": str(conversation.agent_id) if conversation.agent_id else None,
    }


def record_token_usage(
    db: Session,
    company_id,
    *,
    input_tokens: int,
    output_tokens: int,
    now: Optional[datetime] = None,
) -> None:
    """Add to the company's monthly token counter and commit."""
    if not input_tokens and not output_tokens:
        return
    now = now or utcnow()
    month = date(now.year, now.month, 1)

    def _bump() -> bool:
        updated = (
            db.query(TokenUsage)
            .filter(TokenUsage.company_id == company_id, TokenUsage.month == month)
            .update(
                {
                    "input_tokens": TokenUsage.input_tokens + input_tokens,
                    "output_tokens": TokenUsage.output_tokens + output_tokens,
                },
                synchronize_session=False,
            )
        )
        return updated > 0

    if not _bump():
        try:
            with db.begin_nested():
                db.add(
                    TokenUsage(
                        company_id=company_id,
                        month=month,
                        input_tokens=input_tokens,
                        output_tokens=output_tokens,
                    )
                )
        except IntegrityError:
            _bump()
    db.commit()
