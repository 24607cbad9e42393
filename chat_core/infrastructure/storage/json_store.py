import json
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationRepository, KeyValueStore
from chat_core.domain.exceptions import BusinessError, StorageCapacityExceeded
from chat_core.domain.models import ROLES, Attachment, ChatMessage, Conversation, ServerSettings
from chat_core.infrastructure.logging.logger import logger

SETTINGS_KEY = "settings"
CONVERSATIONS_KEY = "conversations"


@dataclass
class StorageInfo:
    used: int
    total: int
    percentage: int


def _iso(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_ts(raw: Any) -> datetime:
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))


class JsonPersistenceAdapter(ConversationRepository):
    """把会话列表与服务设置序列化为 JSON 写入容量受限的键值存储。

    - 写入前统一截断：每个会话只保留最近 max_messages 条消息，
      列表（最新在前）只保留前 max_conversations 个。
    - 写入超出配额时，先淘汰当前已持久化列表中最旧的 eviction_ratio 部分，
      再重试一次原始负载；仍失败则返回 False。
    - 读取永不抛出：任何读/解析问题都返回空列表或默认设置。
    """

    def __init__(
        self,
        kv: KeyValueStore,
        max_conversations: Optional[int] = None,
        max_messages: Optional[int] = None,
        eviction_ratio: Optional[float] = None,
    ):
        self._kv = kv
        self._max_conversations = max_conversations or settings.max_conversations
        self._max_messages = max_messages or settings.max_messages_per_conversation
        self._eviction_ratio = eviction_ratio or settings.eviction_ratio

    # ---- 会话 ----

    def save_conversations(self, conversations: List[Conversation]) -> bool:
        truncated = self._truncate(conversations)
        return self._safe_save(CONVERSATIONS_KEY, [self._conversation_to_dict(c) for c in truncated])

    def load_conversations(self) -> List[Conversation]:
        try:
            raw = self._kv.get(CONVERSATIONS_KEY)
        except BusinessError as e:
            logger.error("Failed to load conversations", extra={"extra": {"code": e.code, "error": e.message}})
            return []
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Failed to load conversations", extra={"extra": {"error": str(e)}})
            return []
        if not isinstance(data, list):
            logger.error("Failed to load conversations", extra={"extra": {"error": "stored value is not a list"}})
            return []

        conversations: List[Conversation] = []
        for item in data:
            try:
                conversations.append(self._conversation_from_dict(item))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Dropped unreadable conversation", extra={"extra": {"error": str(e)}})

        truncated = self._truncate(conversations)
        changed = len(conversations) != len(data) or len(truncated) != len(conversations) or any(
            len(a.messages) != len(b.messages) for a, b in zip(truncated, conversations)
        )
        if changed:
            logger.info(
                "Re-saving truncated conversations",
                extra={"extra": {"stored": len(data), "kept": len(truncated)}},
            )
            self.save_conversations(truncated)
        return truncated

    def clear_conversations(self) -> bool:
        return self._safe_save(CONVERSATIONS_KEY, [])

    # ---- 设置 ----

    def save_settings(self, server: ServerSettings) -> bool:
        return self._safe_save(SETTINGS_KEY, {"host": server.host, "port": server.port})

    def load_settings(self, default: Optional[ServerSettings] = None) -> ServerSettings:
        fallback = default or ServerSettings(host=settings.ollama_host, port=settings.ollama_port)
        try:
            raw = self._kv.get(SETTINGS_KEY)
            if raw:
                data = json.loads(raw)
                return ServerSettings(host=str(data["host"]), port=int(data["port"]))
        except (BusinessError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.error("Failed to load settings", extra={"extra": {"error": str(e)}})
        return fallback

    def storage_info(self) -> StorageInfo:
        try:
            used = self._kv.used_bytes()
        except (BusinessError, OSError):
            return StorageInfo(used=0, total=0, percentage=0)
        total = self._kv.quota_bytes
        return StorageInfo(used=used, total=total, percentage=round(used / total * 100) if total else 0)

    # ---- 内部 ----

    def _truncate(self, conversations: List[Conversation]) -> List[Conversation]:
        out: List[Conversation] = []
        for conv in conversations[: self._max_conversations]:
            if len(conv.messages) > self._max_messages:
                conv = replace(conv, messages=list(conv.messages[-self._max_messages:]))
            out.append(conv)
        return out

    def _safe_save(self, key: str, data: Any) -> bool:
        text = json.dumps(data, ensure_ascii=False)
        try:
            self._kv.set(key, text)
            return True
        except StorageCapacityExceeded:
            logger.warning("Storage quota exceeded. Attempting to free up space...", extra={"extra": {"key": key}})
            try:
                if self._evict_oldest():
                    self._kv.set(key, text)
                    return True
            except BusinessError as e:
                logger.error(
                    "Failed to clear space", extra={"extra": {"key": key, "code": e.code, "error": e.message}}
                )
        except BusinessError as e:
            logger.error("Failed to save", extra={"extra": {"key": key, "code": e.code, "error": e.message}})
        return False

    def _evict_oldest(self) -> bool:
        """丢弃当前已持久化列表末尾（最旧）的一部分并写回。无可淘汰时返回 False。"""

        raw = self._kv.get(CONVERSATIONS_KEY)
        try:
            persisted = json.loads(raw) if raw else []
        except json.JSONDecodeError:
            return False
        if not isinstance(persisted, list) or not persisted:
            return False
        to_remove = math.ceil(len(persisted) * self._eviction_ratio)
        kept = persisted[: len(persisted) - to_remove]
        self._kv.set(CONVERSATIONS_KEY, json.dumps(kept, ensure_ascii=False))
        logger.info("Evicted oldest conversations", extra={"extra": {"removed": to_remove, "kept": len(kept)}})
        return True

    @staticmethod
    def _conversation_to_dict(conv: Conversation) -> Dict[str, Any]:
        return {
            "id": conv.id,
            "title": conv.title,
            "model": conv.model,
            "messages": [
                {
                    "role": m.role,
                    "content": m.content,
                    "attachments": [
                        {
                            "id": a.id,
                            "name": a.name,
                            "mime_type": a.mime_type,
                            "size_bytes": a.size_bytes,
                            "content": a.content,
                        }
                        for a in m.attachments
                    ],
                }
                for m in conv.messages
            ],
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
        }

    @staticmethod
    def _conversation_from_dict(data: Dict[str, Any]) -> Conversation:
        messages: List[ChatMessage] = []
        for m in data["messages"]:
            if m["role"] not in ROLES:
                raise ValueError(f"unknown role {m['role']!r}")
            attachments = [
                Attachment(
                    id=str(a["id"]),
                    name=str(a["name"]),
                    mime_type=str(a.get("mime_type") or ""),
                    size_bytes=int(a.get("size_bytes") or 0),
                    content=a.get("content"),
                )
                for a in (m.get("attachments") or [])
            ]
            messages.append(ChatMessage(role=m["role"], content=str(m.get("content") or ""), attachments=attachments))
        return Conversation(
            id=str(data["id"]),
            title=data.get("title") or "",
            model=str(data["model"]),
            messages=messages,
            created_at=_parse_ts(data["created_at"]),
            updated_at=_parse_ts(data["updated_at"]),
        )
