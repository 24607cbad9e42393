"""流式增量的组装器。

生产者线程把传输层的结果作为 ChannelEvent 放进队列，
StreamAssembler 在消费端按顺序把它们累积成一条不断增长的助手消息，
每收到一个增量就产出一次完整快照，便于调用方原地替换。
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Literal, Optional

from chat_core.domain.exceptions import BusinessError
from chat_core.domain.models import ChatMessage

ERROR_PREFIX = "Error: "

Outcome = Literal["completed", "aborted", "failed"]


@dataclass(frozen=True)
class ChannelEvent:
    """生产者与组装器之间传递的消息。

    kind:
        - "open": 已收到成功状态码，开始读取响应体。
        - "delta": 一段内容增量，text 为增量文本。
        - "done": 流正常结束（Done 记录或响应体结束）。
        - "aborted": 取消令牌生效，流提前结束。
        - "error": 传输失败，error 为对应的 BusinessError。
    """

    kind: Literal["open", "delta", "done", "aborted", "error"]
    text: str = ""
    error: Optional[BusinessError] = None


@dataclass(frozen=True)
class Snapshot:
    """某一时刻的完整助手消息。final 为 True 时 outcome 必有值。"""

    message: ChatMessage
    final: bool = False
    outcome: Optional[Outcome] = None
    error: Optional[BusinessError] = None


class StreamAssembler:
    def __init__(self) -> None:
        self._parts: List[str] = []
        self._outcome: Optional[Outcome] = None

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def has_content(self) -> bool:
        return any(self._parts)

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    def assemble(self, events: Iterable[ChannelEvent]) -> Iterator[Snapshot]:
        """消费事件直到终止事件，依次产出快照；终止后不再读取后续事件。"""

        for event in events:
            if self._outcome is not None:
                return
            snapshot = self.feed(event)
            if snapshot is not None:
                yield snapshot
            if self._outcome is not None:
                return

    def feed(self, event: ChannelEvent) -> Optional[Snapshot]:
        if self._outcome is not None:
            raise RuntimeError("stream already finished")
        if event.kind == "delta":
            if not event.text:
                return None
            self._parts.append(event.text)
            return Snapshot(message=self._message())
        if event.kind == "done":
            return self._finish("completed")
        if event.kind == "aborted":
            return self._finish("aborted")
        if event.kind == "error":
            return self._finish("failed", event.error)
        return None

    @staticmethod
    def error_notice(error: BusinessError) -> ChatMessage:
        """失败时追加到会话末尾的独立助手消息，不与已生成的内容合并。"""

        return ChatMessage(role="assistant", content=f"{ERROR_PREFIX}{error.message}")

    def _finish(self, outcome: Outcome, error: Optional[BusinessError] = None) -> Snapshot:
        self._outcome = outcome
        return Snapshot(message=self._message(), final=True, outcome=outcome, error=error)

    def _message(self) -> ChatMessage:
        return ChatMessage(role="assistant", content=self.content)
