"""聊天会话：单次流式回复的状态机与调度。

每个会话同一时刻最多一个活动流，状态流转为：

    Idle -> Requesting -> Streaming -> {Completed, Aborted, Failed} -> Idle

send_message 在调用方线程中运行：它分配取消令牌，启动一个生产者线程读取
传输层，并通过 queue.Queue 把 ChannelEvent 交给 StreamAssembler；每个快照
都以“整体替换消息列表”的方式顺序写回 ConversationStore。不同会话的流互不影响，
各自拥有令牌与累加器。
"""

import enum
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Literal, Optional

from chat_core.domain.exceptions import BusinessError, TransportError
from chat_core.domain.models import Attachment, ChatMessage, Conversation, PullProgress, ServerSettings
from chat_core.infrastructure.logging.logger import logger
from chat_core.session.assembler import ChannelEvent, Snapshot, StreamAssembler
from chat_core.state.conversations import ConversationStore
from chat_core.transport.base import ChatTransport
from chat_core.transport.cancellation import CancelToken


class StreamState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


_TERMINAL = {
    "completed": StreamState.COMPLETED,
    "aborted": StreamState.ABORTED,
    "failed": StreamState.FAILED,
}


@dataclass
class SendResult:
    """一次 send_message 的结果。

    outcome 为 "rejected" 时会话未被修改（会话不存在或已有活动流）。
    """

    outcome: Literal["completed", "aborted", "failed", "rejected"]
    conversation: Optional[Conversation] = None
    content: str = ""
    error: Optional[BusinessError] = None


@dataclass
class _ActiveStream:
    token: CancelToken
    state: StreamState = StreamState.REQUESTING


class ChatSession:
    def __init__(self, store: ConversationStore, transport: ChatTransport, server: ServerSettings):
        self._store = store
        self._transport = transport
        self.server = server
        self._streams: Dict[str, _ActiveStream] = {}
        self._lock = threading.Lock()

    def state(self, conversation_id: str) -> StreamState:
        with self._lock:
            active = self._streams.get(conversation_id)
            return active.state if active else StreamState.IDLE

    def is_streaming(self, conversation_id: str) -> bool:
        return self.state(conversation_id) is not StreamState.IDLE

    def send_message(
        self,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        conversation_id: Optional[str] = None,
        on_snapshot: Optional[Callable[[Snapshot], None]] = None,
    ) -> SendResult:
        """发送一条用户消息并阻塞直到助手回复结束（完成、中止或失败）。

        Args:
            content: 用户输入。
            attachments: 附件（原样保存，不解析）。
            conversation_id: 目标会话，缺省为当前选中的会话。
            on_snapshot: 每个快照（含最终快照）的回调，按顺序调用。

        Returns:
            SendResult；会话不存在或已有活动流时 outcome 为 "rejected"。
        """

        cid = conversation_id or self._store.active_id
        if not cid or self._store.get(cid) is None:
            logger.warning("Send rejected: unknown conversation", extra={"extra": {"conversation_id": cid}})
            return SendResult(outcome="rejected")
        with self._lock:
            if cid in self._streams:
                logger.warning(
                    "Send rejected: stream already active",
                    extra={"extra": {"conversation_id": cid, "state": self._streams[cid].state.value}},
                )
                return SendResult(outcome="rejected", conversation=self._store.get(cid))
            active = _ActiveStream(token=CancelToken())
            self._streams[cid] = active

        producer: Optional[threading.Thread] = None
        try:
            conv = self._store.append_message(
                cid, ChatMessage(role="user", content=content, attachments=list(attachments or []))
            )
            if conv is None:
                return SendResult(outcome="rejected")
            history = list(conv.messages)
            channel: "queue.Queue[ChannelEvent]" = queue.Queue()
            producer = threading.Thread(
                target=self._produce,
                args=(conv.model, history, active.token, channel),
                name=f"chat-stream-{cid}",
                daemon=True,
            )
            logger.info(
                "Stream requested",
                extra={"extra": {"conversation_id": cid, "model": conv.model, "message_count": len(history)}},
            )
            producer.start()
            return self._consume(cid, history, active, channel, on_snapshot)
        finally:
            # 任何退出路径都释放令牌、等待生产者结束并回到 Idle
            active.token.cancel()
            if producer is not None:
                producer.join()
            with self._lock:
                self._streams.pop(cid, None)

    def stop_streaming(self, conversation_id: Optional[str] = None) -> bool:
        cid = conversation_id or self._store.active_id
        with self._lock:
            active = self._streams.get(cid) if cid else None
        if active is None:
            return False
        logger.info("Stream stop requested", extra={"extra": {"conversation_id": cid}})
        active.token.cancel()
        return True

    def stop_all(self) -> None:
        with self._lock:
            tokens = [a.token for a in self._streams.values()]
        for token in tokens:
            token.cancel()

    def pull_model(self, name: str, cancel_token: Optional[CancelToken] = None) -> Iterator[PullProgress]:
        return self._transport.pull_model(self.server.base_url, name, cancel_token=cancel_token)

    def _produce(
        self,
        model: str,
        history: List[ChatMessage],
        token: CancelToken,
        channel: "queue.Queue[ChannelEvent]",
    ) -> None:
        """生产者线程：读取传输层并把结果放入队列，最后一定放入一个终止事件。"""

        try:
            stream = self._transport.stream_chat(
                self.server.base_url,
                model,
                history,
                cancel_token=token,
                on_open=lambda: channel.put(ChannelEvent(kind="open")),
            )
            for delta in stream:
                if token.cancelled:
                    break
                channel.put(ChannelEvent(kind="delta", text=delta.text))
            channel.put(ChannelEvent(kind="aborted" if token.cancelled else "done"))
        except BusinessError as e:
            channel.put(ChannelEvent(kind="error", error=e))
        except Exception as e:
            logger.exception("Unexpected transport failure")
            channel.put(
                ChannelEvent(
                    kind="error",
                    error=TransportError(code="TRANSPORT_ERROR", message=str(e) or type(e).__name__),
                )
            )

    def _consume(
        self,
        cid: str,
        history: List[ChatMessage],
        active: _ActiveStream,
        channel: "queue.Queue[ChannelEvent]",
        on_snapshot: Optional[Callable[[Snapshot], None]],
    ) -> SendResult:
        assembler = StreamAssembler()
        final: Optional[Snapshot] = None
        conv: Optional[Conversation] = None
        try:
            for snapshot in assembler.assemble(self._events(cid, active, channel)):
                if snapshot.final:
                    final = snapshot
                    conv = self._commit(cid, history, assembler, snapshot)
                else:
                    self._store.update(cid, coalesce=True, messages=[*history, snapshot.message])
                if on_snapshot is not None:
                    on_snapshot(snapshot)
        except Exception:
            # 消费端出错按中止处理：停止生产者，并把已生成的内容落盘
            logger.exception("Stream consumer failed", extra={"extra": {"conversation_id": cid}})
            active.token.cancel()
            if final is None:
                final = assembler.feed(ChannelEvent(kind="aborted"))
                self._commit(cid, history, assembler, final)
            self._transition(cid, active, _TERMINAL[final.outcome])
            raise

        if final is None or final.outcome is None:
            raise RuntimeError("stream ended without a terminal event")
        self._transition(cid, active, _TERMINAL[final.outcome])
        return SendResult(outcome=final.outcome, conversation=conv, content=assembler.content, error=final.error)

    def _events(self, cid: str, active: _ActiveStream, channel: "queue.Queue[ChannelEvent]") -> Iterator[ChannelEvent]:
        while True:
            event = channel.get()
            if active.token.cancelled and event.kind != "aborted":
                # 停止后不再应用队列中剩余的增量或完成事件
                yield ChannelEvent(kind="aborted")
                return
            if event.kind == "open":
                self._transition(cid, active, StreamState.STREAMING)
                continue
            yield event

    def _commit(
        self,
        cid: str,
        history: List[ChatMessage],
        assembler: StreamAssembler,
        final: Snapshot,
    ) -> Optional[Conversation]:
        """写入最终消息列表并立即落盘。

        中止时保留已生成的部分内容且不加错误标记；失败时部分内容（若有）保留，
        错误提示作为单独的一条助手消息追加在末尾。
        """

        messages = list(history)
        if assembler.has_content:
            messages.append(final.message)
        if final.outcome == "failed" and final.error is not None:
            messages.append(assembler.error_notice(final.error))
            logger.error(
                "Stream failed",
                extra={"extra": {"conversation_id": cid, "code": final.error.code, "error": final.error.message}},
            )
        conv = self._store.update(cid, messages=messages)
        self._store.flush()
        return conv

    def _transition(self, cid: str, active: _ActiveStream, state: StreamState) -> None:
        with self._lock:
            previous, active.state = active.state, state
        logger.info(
            "Stream state changed",
            extra={"extra": {"conversation_id": cid, "from": previous.value, "to": state.value}},
        )
