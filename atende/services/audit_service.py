from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from atende.logging_config import get_logger
from atende.models import AuditLog

logger = get_logger("audit_service")


class AuditAction(str, Enum):
    AI_TRANSFER_TO_HUMAN = "AI_TRANSFER_TO_HUMAN"
    AI_REQUESTED_VERIFICATION = "AI_REQUESTED_VERIFICATION"
    AI_CONVERSATION_CLOSED = "AI_CONVERSATION_CLOSED"
    INACTIVITY_WARNING_SENT = "INACTIVITY_WARNING_SENT"
    CONVERSATION_CLOSED_INACTIVITY = "CONVERSATION_CLOSED_INACTIVITY"
    PAYMENT_PROOF_RECEIVED = "PAYMENT_PROOF_RECEIVED"


def record(
    db: Session,
    *,
    company_id,
    action: AuditAction,
    entity_id,
    entity: str = "Conversation",
    changes: Optional[dict] = None,
    actor: str = "AI",
) -> AuditLog:
    """Add an audit entry to the current transaction."""
    entry = AuditLog(
        company_id=company_id,
        action=action.value,
        entity=entity,
        entity_id=entity_id,
        changes=changes or {},
        actor=actor,
    )
    db.add(entry)
    return entry


def record_once(
    db: Session,
    *,
    dedupe_key: str,
    company_id,
    action: AuditAction,
    entity_id,
    entity: str = "Conversation",
    changes: Optional[dict] = None,
    actor: str = "SYSTEM",
) -> Optional[AuditLog]:
    """Insert an entry unless one with ``dedupe_key`` exists.

    Returns None when another writer already claimed the key. Runs inside a
    savepoint so the caller's transaction survives the conflict.
    """
    entry = AuditLog(
        company_id=company_id,
        action=action.value,
        entity=entity,
        entity_id=entity_id,
        changes=changes or {},
        actor=actor,
        dedupe_key=dedupe_key,
    )
    try:
        with db.begin_nested():
            db.add(entry)
    except IntegrityError:
        logger.info("Audit entry already recorded", extra={"context": {"dedupe_key": dedupe_key}})
        return None
    return entry
