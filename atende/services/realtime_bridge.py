"""Live dashboard events over redis pub/sub, with an in-process fallback."""

import json
from typing import Callable, List, Optional

from atende.logging_config import get_logger

logger = get_logger("realtime_bridge")

CHANNEL_MESSAGE_NEW = "socket:message:new"
CHANNEL_CONVERSATION_NEW = "socket:conversation:new"
CHANNEL_SESSION_STATUS = "socket:whatsapp:status"

Listener = Callable[[str, dict], None]


class RealtimeBridge:
    """Best-effort publisher; delivery is not guaranteed on either path."""

    def __init__(self, redis_client=None):
        self.redis = redis_client
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        """Register an in-process consumer (e.g. a websocket hub)."""
        self._listeners.append(listener)

    async def publish(self, channel: str, data: dict) -> bool:
        """Returns True if redis accepted the event, False if it went to local listeners."""
        if self.redis is not None:
            try:
                await self.redis.publish(channel, json.dumps(data, ensure_ascii=False, default=str))
                return True
            except Exception as exc:
                logger.warning(
                    "Realtime publish failed, using local listeners",
                    extra={"context": {"channel": channel, "error": str(exc)}},
                )
        self._emit_local(channel, data)
        return False

    def _emit_local(self, channel: str, data: dict) -> None:
        for listener in list(self._listeners):
            try:
                listener(channel, data)
            except Exception as exc:
                logger.warning(
                    "Realtime listener failed",
                    extra={"context": {"channel": channel, "error": str(exc)}},
                )

    async def message_created(self, company_id, conversation_id, message: dict) -> bool:
        return await self.publish(
            CHANNEL_MESSAGE_NEW,
            {"companyId": str(company_id), "conversationId": str(conversation_id), "message": message},
        )

    async def conversation_created(self, company_id, conversation: dict) -> bool:
        return await self.publish(CHANNEL_CONVERSATION_NEW, {"companyId": str(company_id), "conversation": conversation})

    async def session_status(self, company_id, status: str, session: Optional[str] = None) -> bool:
        return await self.publish(
            CHANNEL_SESSION_STATUS,
            {"companyId": str(company_id), "status": status, "session": session},
        )

    async def close(self) -> None:
        # the redis client is shared and closed by its owner
        self._listeners.clear()
        self.redis = None
