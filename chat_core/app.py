"""应用级状态容器。

启动时从持久化层加载一次设置与会话，构造 ConversationStore / 传输 / ChatSession，
并显式传给所有使用方；关闭时停止所有流并把未落盘的修改写入存储。
"""

from typing import Optional

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.domain.conversation import KeyValueStore
from chat_core.domain.models import ServerSettings
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonPersistenceAdapter
from chat_core.infrastructure.storage.kv_store import FileKeyValueStore
from chat_core.session.chat_session import ChatSession
from chat_core.state.conversations import ConversationStore
from chat_core.transport.base import ChatTransport
from chat_core.transport.ollama_client import OllamaClient


class ChatApp:
    def __init__(
        self,
        config: Settings,
        repository: JsonPersistenceAdapter,
        store: ConversationStore,
        transport: ChatTransport,
        session: ChatSession,
    ):
        self.config = config
        self.repository = repository
        self.store = store
        self.transport = transport
        self.session = session
        self._closed = False

    @classmethod
    def start(
        cls,
        config: Optional[Settings] = None,
        kv: Optional[KeyValueStore] = None,
        transport: Optional[ChatTransport] = None,
    ) -> "ChatApp":
        cfg = config or default_settings
        kv = kv or FileKeyValueStore(cfg.storage_root, quota_bytes=cfg.storage_quota_bytes)
        repository = JsonPersistenceAdapter(
            kv,
            max_conversations=cfg.max_conversations,
            max_messages=cfg.max_messages_per_conversation,
            eviction_ratio=cfg.eviction_ratio,
        )
        server = repository.load_settings(ServerSettings(host=cfg.ollama_host, port=cfg.ollama_port))
        conversations = repository.load_conversations()
        store = ConversationStore(repository, conversations, debounce_seconds=cfg.persist_debounce_seconds)
        transport = transport or OllamaClient(cfg)
        session = ChatSession(store, transport, server)
        logger.info(
            "Chat core started",
            extra={"extra": {"base_url": server.base_url, "conversations": len(conversations)}},
        )
        return cls(cfg, repository, store, transport, session)

    @property
    def server(self) -> ServerSettings:
        return self.session.server

    def update_server_settings(self, host: str, port: int) -> bool:
        """更新模型服务地址；写盘失败不影响内存中的新设置。"""

        server = ServerSettings(host=host, port=port)
        self.session.server = server
        ok = self.repository.save_settings(server)
        if not ok:
            logger.warning("Failed to persist server settings", extra={"extra": {"host": host, "port": port}})
        return ok

    def shutdown(self) -> bool:
        if self._closed:
            return True
        self._closed = True
        self.session.stop_all()
        ok = self.store.flush()
        logger.info("Chat core stopped", extra={"extra": {"flushed": ok}})
        return ok

    def __enter__(self) -> "ChatApp":
        return self

    def __exit__(self, *exc) -> bool:
        self.shutdown()
        return False
