from typing import List, Optional, Protocol

from .models import Conversation, ServerSettings


class ConversationRepository(Protocol):
    """会话与设置的持久化协议。

    实现者必须保证 load_* 永不抛出异常；save_* 以布尔值报告是否落盘成功，
    失败只意味着本次写入丢失持久性，不影响内存状态。
    """

    def save_conversations(self, conversations: List[Conversation]) -> bool:
        ...

    def load_conversations(self) -> List[Conversation]:
        ...

    def save_settings(self, server: ServerSettings) -> bool:
        ...

    def load_settings(self, default: Optional[ServerSettings] = None) -> ServerSettings:
        ...


class KeyValueStore(Protocol):
    """容量受限的字符串键值存储。

    set 超出配额时抛出 StorageCapacityExceeded，其他写入失败抛出 BusinessError。
    """

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def used_bytes(self) -> int:
        ...

    @property
    def quota_bytes(self) -> int:
        ...
