"""请求控制器：管理当前唯一的流式补全会话。

职责：
1. 发起请求：检查配置，抢占（取消）上一个会话，创建新会话与助手占位消息。
2. 驱动管线：传输片段 -> StreamDecoder -> DeltaAggregator -> sink。
3. 过滤：已取消或非当前会话的 batch 一律丢弃（按会话 id 比较）。
4. 计时：收到第一个结束帧时计算耗时，附加在 TerminalSuccess 上。
5. 失败：解码/传输错误转为 TerminalError 补丁；取消不产生错误消息。
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, AsyncIterator, Dict, Optional

from ask_core.config.settings import settings
from ask_core.domain.exceptions import (
    ApiError,
    BusinessError,
    CancellationError,
    ConfigurationError,
    DecodeError,
    NetworkError,
    TransportError,
)
from ask_core.domain.models import ChatRequest
from ask_core.domain.patches import Batch, Canceled, NewMessage, TerminalError
from ask_core.infrastructure.logging.logger import log_event, logger
from ask_core.providers.base import ProviderClient
from ask_core.streaming.aggregator import BatchSink, DeltaAggregator
from ask_core.streaming.decoder import StreamDecoder


GENERIC_ERROR_TEXT = "I'm sorry, I don't know what went wrong. Please try again."


class SessionState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELED = "canceled"
    FAILED = "failed"


class CancellationToken:
    """协作式取消标记，在推送帧和接收新片段前检查。"""

    def __init__(self) -> None:
        self._canceled = False

    @property
    def canceled(self) -> bool:
        return self._canceled

    def cancel(self) -> None:
        self._canceled = True

    def raise_if_canceled(self, session_id: str) -> None:
        if self._canceled:
            raise CancellationError(session_id)


@dataclass
class RequestSession:
    """一次进行中的补全请求。session_id 同时也是助手消息的 id。"""

    session_id: str
    started_at: float = field(default_factory=time.monotonic)
    token: CancellationToken = field(default_factory=CancellationToken)
    state: SessionState = SessionState.ACTIVE
    finished_at: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not SessionState.ACTIVE

    @property
    def elapsed_ms(self) -> int:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return int(round((end - self.started_at) * 1000))

    def transition(self, state: SessionState) -> bool:
        """ACTIVE 只能转换一次，终态不可再变。"""
        if self.is_terminal:
            return False
        self.state = state
        self.finished_at = time.monotonic()
        return True


def describe_error(exc: BaseException) -> str:
    """把异常转换为时间线上可读的错误原因。"""
    if isinstance(exc, ApiError):
        if exc.upstream_message:
            return f"Error {exc.http_status}\n{exc.upstream_message}"
        return GENERIC_ERROR_TEXT
    if isinstance(exc, BusinessError):
        return exc.message
    return str(exc) or type(exc).__name__


class RequestController:
    """每个客户端最多一个当前会话；新请求总是抢占旧请求，不排队。"""

    def __init__(self, provider: Optional[ProviderClient], sink: BatchSink, cfg=settings):
        self._provider = provider
        self._sink = sink
        self._settings = cfg
        self._current: Optional[RequestSession] = None
        self._canceled_session_id: Optional[str] = None
        self._aggregator: Optional[DeltaAggregator] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def current_session(self) -> Optional[RequestSession]:
        return self._current

    @property
    def provider(self) -> Optional[ProviderClient]:
        return self._provider

    def set_provider(self, provider: Optional[ProviderClient]) -> None:
        self._provider = provider

    def ensure_ready(self) -> None:
        """未初始化或缺少凭证时抛出 ConfigurationError。"""
        if self._provider is None:
            raise ConfigurationError(code="NOT_INITIALIZED", message="Provider not initialized")
        self._provider.ensure_configured()

    def start_request(self, request: ChatRequest, session_id: str) -> RequestSession:
        """建立新会话并在当前事件循环上调度传输任务。"""
        self.ensure_ready()
        loop = asyncio.get_running_loop()
        self.cancel()

        session = RequestSession(session_id=session_id)
        aggregator = DeltaAggregator(
            session_id,
            partial(self._deliver, session),
            interval=self._settings.flush_interval,
            on_error=partial(self._on_sink_error, session),
        )
        self._current = session
        self._aggregator = aggregator
        log_event(
            logging.INFO,
            "Starting request",
            {"session_id": session_id},
            model=request.model,
            message_count=len(request.messages),
        )
        self._sink([NewMessage(session_id, "assistant", is_thinking=True)])
        self._task = loop.create_task(self._run(session, request, aggregator))
        return session

    def cancel(self) -> None:
        """取消当前会话；会话已处于终态时什么也不做。"""
        session = self._current
        if session is None or not session.transition(SessionState.CANCELED):
            return
        self._canceled_session_id = session.session_id
        session.token.cancel()
        if self._aggregator is not None:
            self._aggregator.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        log_event(logging.INFO, "Canceled request", {"session_id": session.session_id}, elapsed_ms=session.elapsed_ms)
        self._sink([Canceled(session.session_id)])

    async def wait(self) -> None:
        """等待当前传输任务结束（含被取消的情况）。"""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ---- 内部实现 ----

    def _deliver(self, session: RequestSession, batch: Batch) -> None:
        if (
            session is not self._current
            or session.session_id == self._canceled_session_id
            or session.token.canceled
        ):
            logger.debug("Dropped stale batch", extra={"extra": {"session_id": session.session_id, "size": len(batch)}})
            return
        self._sink(batch)

    async def _run(self, session: RequestSession, request: ChatRequest, aggregator: DeltaAggregator) -> None:
        log_ctx: Dict[str, Any] = {"session_id": session.session_id, "model": request.model}
        timeout = self._settings.request_timeout
        try:
            await asyncio.wait_for(self._consume(session, request, aggregator, log_ctx), timeout=timeout)
        except asyncio.TimeoutError:
            self._fail(session, aggregator, NetworkError(code="TIMEOUT", message=f"Request timed out after {timeout:g}s"), log_ctx)
        except CancellationError:
            log_event(logging.INFO, "Stream stopped after cancellation", log_ctx)
        except (DecodeError, TransportError) as e:
            self._fail(session, aggregator, e, log_ctx)
        except asyncio.CancelledError:
            aggregator.cancel()
            log_event(logging.INFO, "Transport task torn down", log_ctx)
            raise
        except Exception as e:
            logger.exception("Unexpected stream failure", extra={"extra": log_ctx})
            self._fail(session, aggregator, e, log_ctx)

    async def _consume(
        self,
        session: RequestSession,
        request: ChatRequest,
        aggregator: DeltaAggregator,
        log_ctx: Dict[str, Any],
    ) -> None:
        decoder = StreamDecoder(max_incomplete_lines=self._settings.max_incomplete_lines)
        fragments = self._provider.stream_chat(request)
        async with aclosing(fragments):
            async with aclosing(decoder.decode(self._accept(session, fragments))) as frames:
                async for frame in frames:
                    session.token.raise_if_canceled(session.session_id)
                    if not frame.is_terminal:
                        aggregator.push(frame)
                        continue
                    if not session.transition(SessionState.COMPLETED):
                        return
                    aggregator.push(frame, response_time_ms=session.elapsed_ms)
                    log_event(
                        logging.INFO,
                        "Completed request",
                        log_ctx,
                        elapsed_ms=session.elapsed_ms,
                        finish_reason=frame.finish_reason or frame.kind.value,
                    )
                    return
        raise TransportError(code="STREAM_INCOMPLETE", message="stream closed before completion")

    def _on_sink_error(self, session: RequestSession, exc: Exception) -> None:
        """推送 batch 失败时按失败结束会话，并停止传输任务。"""
        if session is not self._current or self._aggregator is None:
            return
        self._fail(session, self._aggregator, exc, {"session_id": session.session_id})
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @staticmethod
    async def _accept(session: RequestSession, fragments: AsyncIterator[str]) -> AsyncIterator[str]:
        async for fragment in fragments:
            session.token.raise_if_canceled(session.session_id)
            yield fragment

    def _fail(
        self,
        session: RequestSession,
        aggregator: DeltaAggregator,
        exc: BaseException,
        log_ctx: Dict[str, Any],
    ) -> None:
        if not session.transition(SessionState.FAILED):
            aggregator.cancel()
            return
        aggregator.close()
        reason = describe_error(exc)
        log_event(
            logging.ERROR,
            "Request failed",
            log_ctx,
            error=str(exc),
            code=getattr(exc, "code", type(exc).__name__),
            elapsed_ms=session.elapsed_ms,
        )
        self._deliver(session, [TerminalError(session.session_id, reason, session.elapsed_ms)])
