"""模型服务流式行的 JSON 结构（pydantic 校验）。

只描述核心层用到的字段，其余字段忽略。
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class WireMessage(_Lenient):
    role: str = "assistant"
    content: Optional[str] = None


class ChatLine(_Lenient):
    """POST /api/chat 的一行：{message: {role, content}, done}"""

    message: Optional[WireMessage] = None
    done: bool = False


class PullLine(_Lenient):
    """POST /api/pull 的一行：{status, digest?, total?, completed?}"""

    status: str
    digest: Optional[str] = None
    total: Optional[int] = None
    completed: Optional[int] = None


class ErrorLine(_Lenient):
    error: str
