from atende.models.agent import Agent
from atende.models.appointment import Appointment
from atende.models.audit_log import AuditLog
from atende.models.channel_session import ChannelSession
from atende.models.company import Company
from atende.models.conversation import Conversation
from atende.models.customer_interest import CustomerInterest
from atende.models.customer_memory import CustomerMemory
from atende.models.deal import Deal
from atende.models.inbound_job import InboundJob
from atende.models.message import Message
from atende.models.order import Order
from atende.models.product import Product
from atende.models.token_usage import TokenUsage
from atende.models.training import TrainingChunk, TrainingSource
from atende.models.webhook import Webhook, WebhookDeliveryLog

__all__ = [
    "Company",
    "ChannelSession",
    "Agent",
    "TrainingSource",
    "TrainingChunk",
    "Conversation",
    "Message",
    "CustomerMemory",
    "Webhook",
    "WebhookDeliveryLog",
    "Product",
    "Order",
    "Deal",
    "CustomerInterest",
    "Appointment",
    "AuditLog",
    "InboundJob",
    "TokenUsage",
]
