"""Outbound message delivery for the flow engine."""
from channels.base import MessageDeliverer, OutboundMessage, RecordingDeliverer
from channels.webhook_adapter import WebhookDeliverer, create_deliverer

__all__ = [
    "MessageDeliverer", "OutboundMessage", "RecordingDeliverer",
    "WebhookDeliverer", "create_deliverer",
]
