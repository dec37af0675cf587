from atende.schemas.job import GatewayEvent, InboundJobPayload, InboundMessageData
from atende.schemas.webhook import WebhookEvent, WebhookPayload

__all__ = ["GatewayEvent", "InboundJobPayload", "InboundMessageData", "WebhookEvent", "WebhookPayload"]
