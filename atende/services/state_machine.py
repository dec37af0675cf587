from enum import Enum
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from atende.database import utcnow
from atende.models import Conversation


class ConversationStatus(str, Enum):
    OPEN = "OPEN"
    AI_HANDLING = "AI_HANDLING"
    HUMAN_HANDLING = "HUMAN_HANDLING"
    WAITING_RESPONSE = "WAITING_RESPONSE"
    CLOSED = "CLOSED"


VALID_TRANSITIONS = {
    ConversationStatus.OPEN: [
        ConversationStatus.AI_HANDLING,
        ConversationStatus.HUMAN_HANDLING,
        ConversationStatus.CLOSED,
    ],
    ConversationStatus.AI_HANDLING: [
        ConversationStatus.HUMAN_HANDLING,
        ConversationStatus.WAITING_RESPONSE,
        ConversationStatus.CLOSED,
    ],
    ConversationStatus.HUMAN_HANDLING: [ConversationStatus.AI_HANDLING, ConversationStatus.CLOSED],
    ConversationStatus.WAITING_RESPONSE: [
        ConversationStatus.AI_HANDLING,
        ConversationStatus.HUMAN_HANDLING,
        ConversationStatus.CLOSED,
    ],
    ConversationStatus.CLOSED: [],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ConversationStatus, to_state: ConversationStatus):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ConversationStatus, to_state: ConversationStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ConversationStatus, to_state: ConversationStatus) -> ConversationStatus:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def sources_for(to_state: ConversationStatus) -> list[ConversationStatus]:
    return [state for state, targets in VALID_TRANSITIONS.items() if to_state in targets]


def apply_transition(
    db: Session,
    conversation_id,
    to_state: ConversationStatus,
    *,
    expected: Optional[Iterable[ConversationStatus]] = None,
    unchanged_since: Optional[datetime] = None,
) -> bool:
    """Conditionally move a conversation to ``to_state``.

    The UPDATE only matches while the row is still in one of the expected
    states, so a concurrent writer that got there first makes this a no-op.
    ``unchanged_since`` additionally requires that no message arrived after
    that time.
    Returns True when this call performed the transition. Does not commit.
    """
    allowed = sources_for(to_state)
    if expected is not None:
        expected = [ConversationStatus(state) for state in expected]
        for state in expected:
            transition(state, to_state)
        allowed = expected

    values = {"status": to_state.value}
    if to_state == ConversationStatus.CLOSED:
        values["closed_at"] = utcnow()

    query = db.query(Conversation).filter(
        Conversation.id == conversation_id,
        Conversation.status.in_([state.value for state in allowed]),
    )
    if unchanged_since is not None:
        query = query.filter(Conversation.last_message_at <= unchanged_since)
    updated = query.update(values, synchronize_session="fetch")
    return updated > 0
