from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from atende.database import utcnow


class WebhookEvent(str, Enum):
    NEW_CONVERSATION = "NEW_CONVERSATION"
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    SALE_COMPLETED = "SALE_COMPLETED"
    CUSTOMER_INTEREST = "CUSTOMER_INTEREST"
    HUMAN_TRANSFER = "HUMAN_TRANSFER"
    CONVERSATION_CLOSED = "CONVERSATION_CLOSED"
    QUOTE_REQUESTED = "QUOTE_REQUESTED"
    LEAD_CAPTURED = "LEAD_CAPTURED"
    VERIFICATION_REQUESTED = "VERIFICATION_REQUESTED"
    TEST = "TEST"


class WebhookPayload(BaseModel):
    event: WebhookEvent
    timestamp: datetime = Field(default_factory=utcnow)
    data: dict[str, Any] = Field(default_factory=dict)

    def to_bytes(self) -> bytes:
        """Exact bytes that are signed and delivered."""
        return self.model_dump_json().encode("utf-8")
