"""
Message delivery — the engine's outbound capability.

Provides:
- MessageDeliverer: abstract `deliver(conversation_id, content, buttons)`
- OutboundMessage: what a deliverer was asked to send
- RecordingDeliverer: in-process outbox, used by the test harness and tests

Retry is not done here. Handlers wrap delivery in their own bounded retry
policy so a turn's blocking time stays predictable.
"""
from __future__ import annotations

import abc
import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors import DeliveryError

logger = structlog.get_logger()


@dataclass
class OutboundMessage:
    conversation_id: str
    content: str
    buttons: list[dict[str, Any]] = field(default_factory=list)
    message_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    metadata: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class MessageDeliverer(abc.ABC):
    """Outbound transport to a messaging provider."""

    @abc.abstractmethod
    async def deliver(
        self,
        conversation_id: str,
        content: str,
        buttons: Optional[list[dict[str, Any]]] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Send one message. Returns provider details ({"message_id": ...}).
        Raises DeliveryError on failure; `retryable` says whether a retry may help.
        """
        ...

    async def close(self) -> None:
        return None


class RecordingDeliverer(MessageDeliverer):
    """Keeps every delivered message in memory, optionally failing the first N sends."""

    def __init__(self, fail_times: int = 0):
        self.outbox: list[OutboundMessage] = []
        self._fail_remaining = fail_times

    async def deliver(self, conversation_id, content, buttons=None, metadata=None):
        if self._fail_remaining > 0:
            self._fail_remaining -= 1
            raise DeliveryError("simulated delivery failure")
        msg = OutboundMessage(
            conversation_id=conversation_id,
            content=content,
            buttons=list(buttons or []),
            metadata=dict(metadata or {}),
        )
        self.outbox.append(msg)
        logger.debug("message_recorded",
                     conversation_id=conversation_id,
                     message_id=msg.message_id)
        return {"status": "sent", "message_id": msg.message_id}

    def messages_for(self, conversation_id: str) -> list[OutboundMessage]:
        return [m for m in self.outbox if m.conversation_id == conversation_id]

    def clear(self) -> None:
        self.outbox.clear()
