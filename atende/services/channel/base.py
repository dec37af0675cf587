import re
from abc import ABC, abstractmethod
from typing import Optional


class ChannelError(Exception):
    """Gateway unreachable or returned a server error."""

    retryable = True


class ChannelSessionError(ChannelError):
    """Session missing or disconnected; retrying will not help."""

    retryable = False


def to_chat_id(recipient: str) -> str:
    if "@" in recipient:
        return recipient
    return re.sub(r"\D", "", recipient) + "@c.us"


class ChannelAdapter(ABC):
    """Messaging gateway primitives.

    Send methods return True when the gateway acknowledged the message.
    That is not a delivery confirmation.
    """

    @abstractmethod
    async def send_text(self, session: str, recipient: str, text: str) -> bool: ...

    @abstractmethod
    async def send_file(
        self,
        session: str,
        recipient: str,
        file_url: str,
        file_name: str,
        caption: Optional[str] = None,
    ) -> bool: ...

    @abstractmethod
    async def send_image(self, session: str, recipient: str, image_url: str, caption: Optional[str] = None) -> bool: ...

    @abstractmethod
    async def get_status(self, session: str) -> str:
        """CONNECTED or DISCONNECTED."""

    @abstractmethod
    async def start_session(self, session: str, webhook_url: Optional[str] = None) -> dict: ...

    @abstractmethod
    async def logout(self, session: str) -> bool: ...

    async def close(self) -> None:
        return None
