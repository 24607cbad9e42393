"""ChatTransport 抽象接口。

会话层不直接依赖具体的 HTTP 实现，而是依赖此协议：

- stream_chat: 发起一次流式对话，逐个产出 ContentDelta。
- pull_model: 发起一次模型拉取，逐个产出 PullProgress。

两者都是惰性、有限、不可重启的迭代器；取消时迭代器正常结束（而不是抛异常），
调用方通过令牌状态区分“完成”与“中止”。
"""

from typing import Callable, Iterator, List, Optional, Protocol

from chat_core.domain.models import ChatMessage, ContentDelta, PullProgress
from chat_core.transport.cancellation import CancelToken


class ChatTransport(Protocol):
    name: str

    def stream_chat(
        self,
        base_url: str,
        model: str,
        messages: List[ChatMessage],
        cancel_token: Optional[CancelToken] = None,
        on_open: Optional[Callable[[], None]] = None,
    ) -> Iterator[ContentDelta]:
        ...

    def pull_model(
        self,
        base_url: str,
        name: str,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[PullProgress]:
        ...
