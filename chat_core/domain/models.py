"""统一的对话与流式数据模型。

本模块定义了在传输层、会话层与持久化层之间共享的标准数据结构：

- Attachment: 随消息携带的附件，内容对核心层不透明。
- ChatMessage: 一条对话消息（system/user/assistant）。
- Conversation: 一个会话及其有序消息列表。
- ServerSettings: 模型服务地址（host/port）。
- StreamRecord: 流式响应中每一行解析后的记录（带标签的联合类型）。

持久化层负责在这些模型与 JSON 之间做转换，传输层负责在这些模型与
模型服务的请求/响应 JSON 之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union


# 消息角色（与 Ollama /api/chat 的 role 字段对应）
Role = Literal["system", "user", "assistant"]

ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class Attachment:
    """消息附件。

    核心层只负责原样携带，不解析 content（base64 字符串）。
    """

    id: str
    name: str
    mime_type: str
    size_bytes: int
    content: Optional[str] = None


@dataclass(frozen=True)
class ChatMessage:
    """一条对话消息，既用于请求，也用于持久化。

    - role: 消息角色。
    - content: 纯文本内容。只有当所在会话正在流式生成、且本条是最后一条
      assistant 消息时，content 才会被新的快照替换。
    - attachments: 附件列表，顺序有意义。
    """

    role: Role
    content: str
    attachments: List[Attachment] = field(default_factory=list)


@dataclass(frozen=True)
class Conversation:
    """一个会话。

    由 ConversationStore 独占，所有修改都通过 update 生成新对象替换，
    不在原对象上原地修改。
    """

    id: str
    title: str
    model: str
    messages: List[ChatMessage]
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ServerSettings:
    """模型服务地址，仅用于拼接 base_url，核心层不做额外校验。"""

    host: str = "localhost"
    port: int = 11434

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class ModelInfo:
    """/api/tags 返回的单个模型条目。"""

    name: str
    size: int = 0
    digest: str = ""
    modified_at: str = ""
    details: Dict[str, Any] = field(default_factory=dict)


# ---- 流式记录 ----


@dataclass(frozen=True)
class ContentDelta:
    """一次助手输出增量。"""

    text: str


@dataclass(frozen=True)
class PullProgress:
    """拉取模型时的进度行。"""

    status: str
    digest: Optional[str] = None
    total: Optional[int] = None
    completed: Optional[int] = None


@dataclass(frozen=True)
class Done:
    """服务端声明流结束（done == true）。"""


@dataclass(frozen=True)
class Malformed:
    """无法解析的行。传输层跳过它，不中断流。"""

    line: str
    reason: str = ""


@dataclass(frozen=True)
class ServerError:
    """服务端在流中返回的 {"error": "..."} 行。"""

    message: str


StreamRecord = Union[ContentDelta, PullProgress, Done, Malformed, ServerError]
