from atende.services.channel.base import ChannelAdapter, ChannelError, ChannelSessionError, to_chat_id
from atende.services.channel.wppconnect import WPPConnectAdapter

__all__ = ["ChannelAdapter", "ChannelError", "ChannelSessionError", "WPPConnectAdapter", "to_chat_id"]
