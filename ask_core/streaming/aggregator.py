"""增量聚合器：把高频到达的协议帧按固定节拍批量推送。

网络分片的粒度与 UI 刷新频率无关：帧先进入内部 batch，
定时任务每个 interval 检查一次，非空则整体推送给 sink 并清空。
定时任务由聚合器自己持有，首帧时启动，结束帧强制 flush 或取消时停止，且只停止一次。
"""

import asyncio
import logging
from typing import Callable, Optional

from ask_core.domain.models import ProtocolFrame
from ask_core.domain.patches import Batch, ContentDelta, TerminalSuccess
from ask_core.infrastructure.logging.logger import log_event


BatchSink = Callable[[Batch], None]
ErrorHandler = Callable[[Exception], None]


class DeltaAggregator:
    """单条助手消息的增量缓冲区。"""

    def __init__(
        self,
        message_id: str,
        sink: BatchSink,
        interval: float = 0.1,
        on_error: Optional[ErrorHandler] = None,
    ):
        self._message_id = message_id
        self._sink = sink
        self._on_error = on_error
        self._interval = interval
        self._batch: Batch = []
        self._ticker: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def pending(self) -> int:
        """当前 batch 中尚未推送的补丁数。"""
        return len(self._batch)

    def push(self, frame: ProtocolFrame, response_time_ms: Optional[int] = None) -> None:
        """缓冲一个帧。结束帧会立即触发最终 flush。"""
        if self._stopped:
            return
        if frame.is_terminal:
            self._batch.append(TerminalSuccess(self._message_id, frame.text, response_time_ms))
            self._stop(flush=True)
            return
        self._batch.append(ContentDelta(self._message_id, frame.text))
        if self._ticker is None:
            self._ticker = asyncio.get_running_loop().create_task(self._tick())

    def flush(self) -> None:
        """推送当前 batch；空 batch 不做任何事。"""
        if not self._batch:
            return
        batch, self._batch = self._batch, []
        self._sink(batch)

    def close(self) -> None:
        """流结束（或失败）时推送剩余内容并停止定时任务。"""
        self._stop(flush=True)

    def cancel(self) -> None:
        """丢弃缓冲内容并停止定时任务。"""
        self._stop(flush=False)

    def _stop(self, flush: bool) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._ticker is not None:
            self._ticker.cancel()
        if flush:
            self.flush()
        else:
            self._batch.clear()

    async def _tick(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self._interval)
            try:
                self.flush()
            except Exception as e:
                log_event(logging.ERROR, "Batch sink failed", {"message_id": self._message_id}, error=str(e))
                self._stop(flush=False)
                if self._on_error is None:
                    raise
                self._on_error(e)
                return
