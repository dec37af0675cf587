from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal, Optional

from sqlalchemy.orm import Session

from atende.models import Company, Conversation
from atende.schemas.webhook import WebhookEvent

EventSink = Callable[[Any, WebhookEvent, dict], None]


class ToolName(str, Enum):
    SEARCH_PRODUCT = "buscarProduto"
    TRANSFER_TO_HUMAN = "transferirParaHumano"
    REQUEST_VERIFICATION = "solicitarVerificacao"
    REGISTER_INTEREST = "registrarInteresse"
    PROCESS_SALE = "processarVenda"
    REQUEST_QUOTE = "solicitarOrcamento"
    CAPTURE_LEAD = "capturarLead"
    SEND_DOCUMENT = "enviarDocumento"
    COLLECT_DELIVERY = "coletarEnderecoEntrega"
    CLOSE_CONVERSATION = "finalizarConversa"


@dataclass(frozen=True)
class Attachment:
    kind: Literal["file", "image"]
    url: str
    file_name: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class VerificationFollowUp:
    """Ask a human to confirm something the catalog could not answer."""

    subject: str
    product: Optional[str] = None
    urgency: str = "media"


@dataclass
class ToolResult:
    ok: bool
    message: str
    data: dict = field(default_factory=dict)
    attachment: Optional[Attachment] = None
    follow_up: Optional[VerificationFollowUp] = None

    @classmethod
    def success(cls, message: str, **data) -> "ToolResult":
        return cls(ok=True, message=message, data=data)

    @classmethod
    def failure(cls, message: str, **data) -> "ToolResult":
        return cls(ok=False, message=message, data=data)

    def for_model(self) -> dict:
        """What the model sees: no internal URLs, only that a file will follow."""
        view: dict = {"success": self.ok, "message": self.message}
        if self.data:
            view["data"] = self.data
        if self.attachment:
            label = "imagem" if self.attachment.kind == "image" else "arquivo"
            view["attachment"] = f"Um {label} ({self.attachment.title or self.attachment.file_name or 'anexo'}) será enviado automaticamente ao cliente."
        return view


@dataclass
class ToolContext:
    """Per-message scope a tool runs in.

    Webhook events raised by a tool are held until the tool's transaction
    commits, then handed to ``sink``.
    """

    db: Session
    company: Company
    conversation: Conversation
    agent_id: Any = None
    sink: Optional[EventSink] = None
    pending_events: list = field(default_factory=list)

    @property
    def company_id(self):
        return self.company.id

    @property
    def customer_phone(self) -> str:
        return self.conversation.customer_phone

    def emit(self, event: WebhookEvent, data: dict) -> None:
        self.pending_events.append((event, data))

    def flush_events(self) -> None:
        events, self.pending_events = self.pending_events, []
        if self.sink is None:
            return
        for event, data in events:
            self.sink(self.company_id, event, data)

    def discard_events(self) -> None:
        self.pending_events = []
