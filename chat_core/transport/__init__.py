"""与模型服务通信的传输层。

该包下的模块负责：
- 定义传输抽象接口 (base)。
- NDJSON 分帧与逐行解析 (framing, schemas)。
- 协作式取消令牌 (cancellation)。
- Ollama 的具体实现 (ollama_client)。
"""

from chat_core.config.settings import settings
from chat_core.transport.base import ChatTransport
from chat_core.transport.cancellation import CancelToken
from chat_core.transport.ollama_client import OllamaClient


def create_transport(config=None) -> ChatTransport:
    """根据配置创建传输实例，默认取全局 settings。"""

    return OllamaClient(config or settings)


__all__ = ["CancelToken", "ChatTransport", "OllamaClient", "create_transport"]
