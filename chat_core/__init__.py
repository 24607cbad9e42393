"""Chat Core 顶层包。

该包提供本地模型服务聊天客户端的核心实现，
包括配置加载、领域模型、NDJSON 流式传输与取消、
增量组装、会话状态容器以及容量受限的持久化存储。
"""

from chat_core.app import ChatApp

__all__ = ["ChatApp"]
