from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

_SYSTEM_SUBTYPES = {"notification", "call_log", "e2e_notification", "gp2", "ciphertext", "revoked"}


class InboundMessageData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: str = Field(validation_alias=AliasChoices("from", "from_"), serialization_alias="from")
    body: Optional[str] = ""
    type: Optional[str] = "chat"
    mediaUrl: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaUrl", "media_url"))
    messageId: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "message_id", "id"))
    notifyName: Optional[str] = Field(default=None, validation_alias=AliasChoices("notifyName", "notify_name"))


class InboundJobPayload(BaseModel):
    """One queued inbound message, as stored in ``inbound_jobs.payload``."""

    model_config = ConfigDict(populate_by_name=True)

    sessionId: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))
    session: str
    messageData: InboundMessageData = Field(validation_alias=AliasChoices("messageData", "message_data"))

    def dump(self) -> dict:
        return self.model_dump(by_alias=True)


class GatewayEvent(BaseModel):
    """Webhook body posted by the WPPConnect server."""

    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    session: Optional[str] = None
    id: Optional[str] = None
    from_: Optional[str] = Field(default=None, validation_alias=AliasChoices("from", "from_"))
    body: Optional[str] = None
    type: Optional[str] = None
    subtype: Optional[str] = None
    mediaUrl: Optional[str] = None
    notifyName: Optional[str] = None
    fromMe: bool = False
    isGroupMsg: bool = False

    def is_customer_message(self) -> bool:
        event = (self.event or "").lower()
        if "message" not in event:
            return False
        sender = self.from_ or ""
        if not sender or "status@broadcast" in sender or sender.endswith("@g.us"):
            return False
        if self.fromMe or self.isGroupMsg:
            return False
        return (self.subtype or "").lower() not in _SYSTEM_SUBTYPES

    def to_job(self, session: str) -> InboundJobPayload:
        return InboundJobPayload(
            session=session,
            messageData=InboundMessageData(
                from_=self.from_ or "",
                body=self.body or "",
                type=self.type or "chat",
                mediaUrl=self.mediaUrl,
                messageId=self.id,
                notifyName=self.notifyName,
            ),
        )
