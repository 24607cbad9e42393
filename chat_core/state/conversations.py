"""内存中的会话状态容器。

ConversationStore 持有权威的会话列表（最新在前）与当前选中的会话，
所有修改都以“整体替换”的方式顺序执行，并把持久化委托给 ConversationRepository。
持久化失败只记录警告，不影响内存中的操作。
"""

import threading
import time
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationRepository
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import ChatMessage, Conversation
from chat_core.infrastructure.logging.logger import logger

DEFAULT_TITLE = "New Chat"
TITLE_ELLIPSIS = "..."

# update 允许修改的字段
_MUTABLE_FIELDS = {"title", "model", "messages"}


def derive_title(content: str, max_chars: Optional[int] = None) -> str:
    """根据首条用户消息生成标题：超长截断并追加省略号，空内容回退为默认标题。"""

    limit = max_chars or settings.title_max_chars
    text = content or ""
    if not text.strip():
        return DEFAULT_TITLE
    if len(text) > limit:
        return text[:limit] + TITLE_ELLIPSIS
    return text


class ConversationStore:
    def __init__(
        self,
        repository: ConversationRepository,
        conversations: Optional[List[Conversation]] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self._repo = repository
        self._conversations: List[Conversation] = list(conversations or [])
        self._active_id: Optional[str] = None
        self._lock = threading.RLock()
        self._save_lock = threading.Lock()
        self._debounce = settings.persist_debounce_seconds if debounce_seconds is None else debounce_seconds
        self._dirty = False
        self._last_save = 0.0
        self.last_save_ok = True

    # ---- 查询 ----

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._find(conversation_id)

    def list(self) -> List[Conversation]:
        with self._lock:
            return list(self._conversations)

    # ---- 修改 ----

    def create(self, model: str) -> Conversation:
        now = datetime.now(timezone.utc)
        conv = Conversation(
            id=f"c-{uuid4().hex}",
            title=DEFAULT_TITLE,
            model=model,
            messages=[],
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._conversations.insert(0, conv)
            self._active_id = conv.id
        logger.info("Created conversation", extra={"extra": {"conversation_id": conv.id, "model": model}})
        self._persist()
        return conv

    def select(self, conversation_id: Optional[str]) -> None:
        with self._lock:
            if conversation_id is None or self._find(conversation_id) is not None:
                self._active_id = conversation_id

    def delete(self, conversation_id: str) -> bool:
        with self._lock:
            remaining = [c for c in self._conversations if c.id != conversation_id]
            if len(remaining) == len(self._conversations):
                return False
            self._conversations = remaining
            if self._active_id == conversation_id:
                latest = max(remaining, key=lambda c: c.updated_at, default=None)
                self._active_id = latest.id if latest else None
        logger.info("Deleted conversation", extra={"extra": {"conversation_id": conversation_id}})
        self._persist()
        return True

    def update(self, conversation_id: str, coalesce: bool = False, **fields: Any) -> Optional[Conversation]:
        """合并字段并刷新 updated_at；未知 id 为空操作，返回 None。

        coalesce=True 时（流式增量）按 debounce 间隔合并写盘，最终状态由 flush 落盘。
        """

        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValidationError(code="UNKNOWN_FIELD", message=f"cannot update fields: {sorted(unknown)}")
        return self._apply(conversation_id, lambda conv: fields, coalesce)

    def rename(self, conversation_id: str, title: str) -> Optional[Conversation]:
        return self.update(conversation_id, title=title)

    def append_message(self, conversation_id: str, message: ChatMessage) -> Optional[Conversation]:
        """追加一条消息；空会话追加用户消息时同时生成标题。"""

        def fields_for(conv: Conversation) -> Dict[str, Any]:
            fields: Dict[str, Any] = {"messages": [*conv.messages, message]}
            if not conv.messages and message.role == "user":
                fields["title"] = derive_title(message.content)
            return fields

        return self._apply(conversation_id, fields_for, coalesce=False)

    def flush(self) -> bool:
        """若有被合并的未落盘修改，立即写入。"""

        if not self._dirty:
            return self.last_save_ok
        return self._save()

    # ---- 内部 ----

    def _apply(
        self,
        conversation_id: str,
        fields_for: Callable[[Conversation], Dict[str, Any]],
        coalesce: bool,
    ) -> Optional[Conversation]:
        # 持锁完成“读-合并-替换”，写盘在锁外进行
        with self._lock:
            for idx, conv in enumerate(self._conversations):
                if conv.id == conversation_id:
                    fields = dict(fields_for(conv))
                    if "messages" in fields:
                        fields["messages"] = list(fields["messages"])
                    updated = replace(conv, **fields, updated_at=self._next_timestamp(conv.updated_at))
                    self._conversations[idx] = updated
                    break
            else:
                return None
        self._persist(coalesce=coalesce)
        return updated

    def _find(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    @staticmethod
    def _next_timestamp(previous: datetime) -> datetime:
        now = datetime.now(timezone.utc)
        if now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    def _persist(self, coalesce: bool = False) -> None:
        self._dirty = True
        if coalesce and time.monotonic() - self._last_save < self._debounce:
            return
        self._save()

    def _save(self) -> bool:
        with self._save_lock:
            with self._lock:
                snapshot = list(self._conversations)
                self._dirty = False
            ok = self._repo.save_conversations(snapshot)
            self._last_save = time.monotonic()
            self.last_save_ok = ok
        if not ok:
            logger.warning(
                "Failed to persist conversations; in-memory state kept",
                extra={"extra": {"count": len(snapshot)}},
            )
        return ok
