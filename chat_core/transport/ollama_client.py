"""Ollama 传输层适配器。

本模块负责：

1. 将内部 ChatMessage 列表转换为 /api/chat 的请求体。
2. 以流式方式读取响应体，经 LineFrameDecoder + RecordParser 得到 StreamRecord。
3. 处理网络/状态码异常，统一包装为 TransportError 的子类。
4. 在挂起点检查 CancelToken，取消时关闭连接并正常结束迭代。

/api/pull 复用同一条解码管线，只是产出 PullProgress 而不是内容增量。
另外提供 /api/tags、/api/delete 等非流式接口，供外部协作方（模型列表 UI 等）使用。
"""

from typing import Any, Callable, Dict, Iterator, List, Optional

import httpx

from chat_core.domain.exceptions import ApiError, NetworkError, ValidationError
from chat_core.domain.models import (
    ChatMessage,
    ContentDelta,
    Done,
    Malformed,
    ModelInfo,
    PullProgress,
    ServerError,
    StreamRecord,
)
from chat_core.infrastructure.logging.logger import logger
from chat_core.transport.cancellation import CancelToken
from chat_core.transport.framing import LineFrameDecoder, RecordParser

CONNECTION_CHECK_TIMEOUT = 5.0


class OllamaClient:
    """Ollama HTTP 客户端实现。

    - name: 传输名称（供日志/调试使用）。
    - stream_chat / pull_model: 流式入口，见 ChatTransport 协议。
    """

    name = "ollama"

    def __init__(self, settings):
        # Settings 里包含超时等配置
        self._settings = settings

    def stream_chat(
        self,
        base_url: str,
        model: str,
        messages: List[ChatMessage],
        cancel_token: Optional[CancelToken] = None,
        on_open: Optional[Callable[[], None]] = None,
    ) -> Iterator[ContentDelta]:
        """执行一次流式对话调用，逐步 yield ContentDelta。"""

        if not model:
            raise ValidationError(code="MISSING_MODEL", message="model not set")
        payload = {
            "model": model,
            "messages": [self._message_to_payload(m) for m in messages],
            "stream": True,
        }
        for record in self._stream_records(f"{base_url}/api/chat", payload, cancel_token, on_open):
            if isinstance(record, ContentDelta):
                yield record
            elif isinstance(record, Done):
                return

    def pull_model(
        self,
        base_url: str,
        name: str,
        cancel_token: Optional[CancelToken] = None,
    ) -> Iterator[PullProgress]:
        """拉取模型，逐步 yield PullProgress。"""

        if not name:
            raise ValidationError(code="MISSING_MODEL", message="model name not set")
        payload = {"name": name, "stream": True}
        for record in self._stream_records(f"{base_url}/api/pull", payload, cancel_token, None):
            if isinstance(record, PullProgress):
                yield record
            elif isinstance(record, Done):
                return

    def list_models(self, base_url: str) -> List[ModelInfo]:
        """GET /api/tags，返回本地可用模型列表。"""

        data = self._request_json("GET", f"{base_url}/api/tags")
        models: List[ModelInfo] = []
        for item in (data or {}).get("models") or []:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            models.append(
                ModelInfo(
                    name=item["name"],
                    size=int(item.get("size") or 0),
                    digest=item.get("digest") or "",
                    modified_at=item.get("modified_at") or "",
                    details=item.get("details") or {},
                )
            )
        return models

    def delete_model(self, base_url: str, name: str) -> None:
        """DELETE /api/delete。"""

        if not name:
            raise ValidationError(code="MISSING_MODEL", message="model name not set")
        self._request_json("DELETE", f"{base_url}/api/delete", json={"name": name})

    def check_connection(self, base_url: str) -> bool:
        """探测模型服务是否可达，任何异常都视为不可达。"""

        try:
            with httpx.Client(timeout=CONNECTION_CHECK_TIMEOUT, trust_env=False) as client:
                resp = client.get(f"{base_url}/api/tags")
        except httpx.HTTPError:
            return False
        return resp.status_code < 400

    def _stream_records(
        self,
        url: str,
        payload: Dict[str, Any],
        cancel_token: Optional[CancelToken],
        on_open: Optional[Callable[[], None]],
    ) -> Iterator[StreamRecord]:
        """发送流式 POST 并逐条产出解析后的记录。

        Malformed 行在这里被丢弃；ServerError 行转换为 ApiError。
        取消时直接 return，不抛出异常。
        """

        token = cancel_token or CancelToken()
        if token.cancelled:
            return
        decoder = LineFrameDecoder()
        parser = RecordParser()
        timeout = httpx.Timeout(self._settings.http_timeout, read=self._settings.stream_read_timeout)
        skipped = 0
        try:
            with httpx.Client(timeout=timeout, trust_env=False) as client:
                with client.stream("POST", url, json=payload) as resp:
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(
                            code="API_ERROR",
                            message=self._error_detail(resp),
                            http_status=resp.status_code,
                            url=url,
                        )
                    if on_open is not None:
                        on_open()
                    unregister = token.on_cancel(resp.close)
                    try:
                        for line in self._iter_lines(resp, decoder, token):
                            for record in parser.parse(line):
                                if isinstance(record, Malformed):
                                    skipped += 1
                                    logger.debug("Skipped malformed line", extra={"extra": {"url": url, "reason": record.reason}})
                                    continue
                                if isinstance(record, ServerError):
                                    raise ApiError(
                                        code="STREAM_ERROR",
                                        message=record.message,
                                        http_status=resp.status_code,
                                        url=url,
                                    )
                                yield record
                                if isinstance(record, Done):
                                    return
                        if token.cancelled:
                            logger.info("Stream cancelled", extra={"extra": {"url": url}})
                    finally:
                        unregister()
        except (httpx.HTTPError, httpx.StreamError, OSError) as e:
            if token.cancelled:
                # 取消回调关闭了响应，读取端因此报错，按中止处理
                logger.info("Stream cancelled", extra={"extra": {"url": url}})
                return
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__, url=url)
        finally:
            if skipped:
                logger.warning("Malformed stream lines skipped", extra={"extra": {"url": url, "count": skipped}})

    @staticmethod
    def _iter_lines(resp, decoder: LineFrameDecoder, token: CancelToken) -> Iterator[str]:
        """按到达顺序产出完整行；每个分块之后检查一次取消。"""

        for chunk in resp.iter_bytes():
            if token.cancelled:
                return
            yield from decoder.feed(chunk)
        if not token.cancelled:
            yield from decoder.flush()

    def _request_json(self, method: str, url: str, json: Optional[dict] = None) -> Any:
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.request(method, url, json=json)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), url=url)
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=self._error_detail(resp), http_status=resp.status_code, url=url)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    @staticmethod
    def _error_detail(resp) -> str:
        """优先取响应体中的 error 字段，其次是原始文本与状态描述。"""

        text = ""
        try:
            text = resp.text or ""
            data = resp.json()
            if isinstance(data, dict) and data.get("error"):
                return str(data["error"])
        except ValueError:
            pass
        return text or getattr(resp, "reason_phrase", "") or f"HTTP {resp.status_code}"

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        """ChatMessage -> {role, content}。

        附件只以一行描述附在正文后面（名称、类型、大小），不读取附件内容。
        """

        content = message.content
        if message.attachments:
            descriptions = "\n".join(
                f"[File: {att.name} ({att.mime_type}, {round(att.size_bytes / 1024)} KB)]"
                for att in message.attachments
            )
            content = f"{content}\n\n{descriptions}"
        return {"role": message.role, "content": content}
