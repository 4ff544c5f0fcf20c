"""SSE 流式解码器。

把传输层交付的任意文本片段（大小不固定，不与帧边界对齐）解码为
有序、惰性的 ProtocolFrame 序列：

- 片段先按行切分；片段末尾没有换行的部分作为“半行”保留，拼到下一个片段前面。
- 不以帧前缀（data:）开头的行被忽略（SSE 注释、event: 行、空行）。
- 以换行结束但不以闭合符 "]}" 结尾的帧行视为不完整，暂存并与下一行拼接；
  同一时间最多暂存一个不完整片段，拼接次数有上限。
- 结构完整却无法解析的帧抛出 DecodeError，不会被静默丢弃。
"""

import json
from typing import AsyncIterable, AsyncIterator, Iterator, List, Optional

from ask_core.domain.exceptions import DecodeError
from ask_core.domain.models import FrameKind, ProtocolFrame


DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
CLOSING_DELIMITER = "]}"


class StreamDecoder:
    """单次流的解码器，不可重用。"""

    def __init__(
        self,
        prefix: str = DATA_PREFIX,
        sentinel: str = DONE_SENTINEL,
        closing: str = CLOSING_DELIMITER,
        max_incomplete_lines: int = 64,
    ):
        self._prefix = prefix
        self._sentinel = sentinel
        self._closing = closing
        self._max_incomplete_lines = max_incomplete_lines
        self._buffer = ""
        self._pending: Optional[str] = None
        self._pending_lines = 0
        self._finished = False
        self._closed = False

    @property
    def finished(self) -> bool:
        """是否已经收到结束哨兵。"""
        return self._finished

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def feed(self, fragment: str) -> Iterator[ProtocolFrame]:
        """写入一个片段，返回由此可解码出的帧（惰性）。

        片段立即进入缓冲区；返回的迭代器在消费时才真正解析。
        """
        if self._closed:
            raise DecodeError("decoder is closed")
        if not self._finished:
            self._buffer += fragment
        return self._drain()

    def close(self) -> List[ProtocolFrame]:
        """传输结束时调用：解析剩余半行，仍有未闭合帧则抛出 DecodeError。"""
        if self._closed:
            return []
        self._closed = True
        frames: List[ProtocolFrame] = []
        if not self._finished:
            tail, self._buffer = self._buffer, ""
            frame = self._decode_line(tail.rstrip("\r"), terminated=True)
            if frame is not None:
                frames.append(frame)
        if self._pending is not None and not self._finished:
            pending, self._pending = self._pending, None
            raise DecodeError("stream ended with an incomplete frame", line=pending)
        return frames

    async def decode(self, fragments: AsyncIterable[str]) -> AsyncIterator[ProtocolFrame]:
        """把异步片段流解码为帧流，收到结束哨兵后停止。"""
        async for fragment in fragments:
            for frame in self.feed(fragment):
                yield frame
            if self._finished:
                self._closed = True
                return
        for frame in self.close():
            yield frame

    # ---- 内部实现 ----

    def _drain(self) -> Iterator[ProtocolFrame]:
        while not self._finished:
            idx = self._buffer.find("\n")
            if idx < 0:
                break
            line = self._buffer[:idx].rstrip("\r")
            self._buffer = self._buffer[idx + 1:]
            frame = self._decode_line(line, terminated=True)
            if frame is not None:
                yield frame

        # 半行看起来已经完整时尽早解析，避免等到下一个片段
        if not self._finished and self._buffer:
            frame = self._decode_line(self._buffer, terminated=False)
            if frame is not None:
                self._buffer = ""
                yield frame

        if self._finished:
            self._buffer = ""

    def _decode_line(self, line: str, terminated: bool) -> Optional[ProtocolFrame]:
        if not line.strip():
            return None
        payload = self._frame_payload(line)
        if payload is None:
            return None
        if self._pending is not None:
            payload = self._pending + payload

        if not self._is_complete(payload):
            if terminated:
                self._hold(payload)
            return None

        if terminated:
            frame = self._parse(payload)
        else:
            try:
                frame = self._parse(payload)
            except DecodeError:
                # 半行可能只是恰好以闭合符结尾，继续等待后续字节
                return None

        self._pending = None
        self._pending_lines = 0
        if frame.kind is FrameKind.DONE:
            self._finished = True
        return frame

    def _frame_payload(self, line: str) -> Optional[str]:
        if line.startswith(self._prefix):
            payload = line[len(self._prefix):]
            return payload[1:] if payload.startswith(" ") else payload
        # SSE 注释行（如 ": keep-alive"）即使在未闭合帧中间也跳过
        if line.startswith(":"):
            return None
        if self._pending is not None:
            return line
        return None

    def _is_complete(self, payload: str) -> bool:
        stripped = payload.strip()
        return stripped == self._sentinel or stripped.endswith(self._closing)

    def _hold(self, payload: str) -> None:
        self._pending_lines += 1
        if self._pending_lines > self._max_incomplete_lines:
            self._pending = None
            raise DecodeError(
                f"frame still incomplete after {self._max_incomplete_lines} lines",
                line=payload[:200],
            )
        self._pending = payload

    def _parse(self, payload: str) -> ProtocolFrame:
        data = payload.strip()
        if data == self._sentinel:
            return ProtocolFrame(FrameKind.DONE)
        try:
            obj = json.loads(data)
        except json.JSONDecodeError as e:
            raise DecodeError(f"malformed frame: {e.msg}", line=data[:200]) from e

        choices = obj.get("choices") if isinstance(obj, dict) else None
        if not choices or not isinstance(choices[0], dict):
            raise DecodeError("frame has no choices", line=data[:200])
        choice = choices[0]
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}
        content = delta.get("content") or ""
        finish_reason = choice.get("finish_reason")
        if finish_reason:
            return ProtocolFrame(FrameKind.FINISH, text=content, finish_reason=finish_reason)
        return ProtocolFrame(FrameKind.DELTA, text=content)
