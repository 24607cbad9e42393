"""会话级流式处理：增量组装与状态机。"""

from .assembler import ChannelEvent, Snapshot, StreamAssembler
from .chat_session import ChatSession, SendResult, StreamState

__all__ = ["ChannelEvent", "ChatSession", "SendResult", "Snapshot", "StreamAssembler", "StreamState"]
