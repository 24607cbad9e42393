"""NDJSON 流的分帧与逐行解析。

- LineFrameDecoder: 把任意切分的字节块还原成完整的文本行。
- RecordParser: 把一行文本校验并转换为 StreamRecord。

两者都不抛出异常：畸形输入以 Malformed 记录表示，由传输层决定跳过。
"""

import codecs
import json
from typing import List

from pydantic import ValidationError

from chat_core.domain.models import (
    ContentDelta,
    Done,
    Malformed,
    PullProgress,
    ServerError,
    StreamRecord,
)
from chat_core.transport.schemas import ChatLine, ErrorLine, PullLine


class LineFrameDecoder:
    """增量行解码器。

    跨 feed 调用只保留一段未完成的尾部缓冲；UTF-8 多字节字符被切断在
    两个分块之间时由增量解码器拼回。不限制单行长度。
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, data: bytes, final: bool = False) -> List[str]:
        text = self._pending + self._decoder.decode(data, final=final)
        parts = text.split("\n")
        self._pending = parts.pop()
        lines = [p[:-1] if p.endswith("\r") else p for p in parts]
        if final:
            rest, self._pending = self._pending, ""
            if rest.strip():
                lines.append(rest[:-1] if rest.endswith("\r") else rest)
        return lines

    def flush(self) -> List[str]:
        return self.feed(b"", final=True)


class RecordParser:
    """把一行 JSON 转换为零个或多个 StreamRecord。

    空行不产生记录；同一行同时带有 content 和 done 时，先产出增量再产出 Done。
    """

    def parse(self, line: str) -> List[StreamRecord]:
        text = line.strip()
        if not text:
            return []
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            return [Malformed(line=line, reason=f"invalid json: {e.msg}")]
        if not isinstance(data, dict):
            return [Malformed(line=line, reason="not an object")]
        try:
            if "error" in data:
                return [ServerError(message=ErrorLine.model_validate(data).error)]
            if "message" in data or "done" in data:
                return self._chat_records(ChatLine.model_validate(data))
            if "status" in data:
                pl = PullLine.model_validate(data)
                return [
                    PullProgress(
                        status=pl.status,
                        digest=pl.digest,
                        total=pl.total,
                        completed=pl.completed,
                    )
                ]
        except ValidationError as e:
            return [Malformed(line=line, reason=f"schema: {e.error_count()} error(s)")]
        return [Malformed(line=line, reason="unrecognized record")]

    @staticmethod
    def _chat_records(chat: ChatLine) -> List[StreamRecord]:
        records: List[StreamRecord] = []
        if chat.message is not None and chat.message.content:
            records.append(ContentDelta(text=chat.message.content))
        if chat.done:
            records.append(Done())
        return records
