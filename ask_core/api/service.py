"""对外 API 服务模块。

ChatService 是 UI 与流式管线之间的唯一接口：
- send / retry / cancel / reset：同步触发，异步效果通过监听器回调送达。
- timeline：当前对话的消息列表（由 MessageReconciler 合并补丁得到）。

所有方法都必须在运行中的 asyncio 事件循环线程上调用。
"""

import logging
from typing import Callable, List, Optional
from uuid import uuid4

from ask_core.config.settings import settings
from ask_core.domain.exceptions import BusinessError
from ask_core.domain.models import ChatMessage, ChatRequest, ConversationMessage
from ask_core.domain.patches import Batch, Canceled, NewMessage, TerminalError, TerminalSuccess
from ask_core.infrastructure.logging.logger import log_event, logger
from ask_core.infrastructure.storage.json_store import JsonHistoryStore
from ask_core.providers import create_provider
from ask_core.providers.base import ProviderClient
from ask_core.streaming.controller import RequestController
from ask_core.streaming.reconciler import MessageReconciler


TimelineListener = Callable[[List[ConversationMessage]], None]

FINISHING_PATCHES = (TerminalSuccess, TerminalError, Canceled)

TITLE_PROMPT = "Summarize the conversation above as a short title of at most six words. Reply with the title only."


def new_message_id() -> str:
    return f"m-{uuid4().hex}"


class ChatService:
    def __init__(
        self,
        provider: Optional[ProviderClient] = None,
        cfg=settings,
        history_store: Optional[JsonHistoryStore] = None,
    ):
        self._settings = cfg
        self._history_store = history_store
        self._reconciler = MessageReconciler()
        self._timeline: List[ConversationMessage] = []
        self._listeners: List[TimelineListener] = []
        self._controller = RequestController(
            provider if provider is not None else create_provider(cfg=cfg),
            self._on_batch,
            cfg,
        )
        self.model: str = cfg.default_model
        self.system_prompt: str = cfg.system_prompt

    @property
    def timeline(self) -> List[ConversationMessage]:
        return list(self._timeline)

    @property
    def controller(self) -> RequestController:
        return self._controller

    @property
    def is_thinking(self) -> bool:
        return any(m.is_thinking for m in self._timeline)

    def subscribe(self, listener: TimelineListener) -> Callable[[], None]:
        """注册时间线监听器，返回取消注册的函数。"""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def update_api_key(self, api_key: str) -> None:
        """替换凭证并重建 Provider（设置落盘由外部负责）。"""
        self._settings = self._settings.model_copy(update={"api_key": api_key})
        self._controller.set_provider(create_provider(cfg=self._settings))

    def send(self, text: str) -> Optional[str]:
        """追加用户消息并发起请求；返回助手消息 id。正在生成时会先中断。

        缺少凭证时抛出 ConfigurationError，时间线保持不变。
        """
        text = text.strip()
        if not text:
            return None
        self._controller.ensure_ready()
        self._controller.cancel()
        self._apply([NewMessage(new_message_id(), "user", text)])
        return self._call(self._reconciler.retry_history(self._timeline))

    def retry(self) -> Optional[str]:
        """以过滤后的历史重新发起请求，失败的消息不会被原地重试。

        历史在取消之前取出，正在生成的回复不进入历史。
        """
        self._controller.ensure_ready()
        history = self._reconciler.retry_history(self._timeline)
        self._controller.cancel()
        if not history:
            return None
        return self._call(history)

    def cancel(self) -> None:
        self._controller.cancel()

    def reset(self) -> None:
        """取消进行中的请求并清空对话。"""
        self._controller.cancel()
        self._timeline = []
        self._notify()

    def restore(self) -> List[ConversationMessage]:
        """从历史存储恢复上一次对话（仅在时间线为空时）。"""
        if self._history_store is None or self._timeline:
            return self.timeline
        self._timeline = self._history_store.load()
        self._notify()
        return self.timeline

    async def wait(self) -> None:
        await self._controller.wait()

    async def generate_title(self) -> Optional[str]:
        """请模型为当前对话生成一个简短标题；失败时返回 None。"""
        history = self._reconciler.retry_history(self._timeline)
        if not history:
            return None
        messages = [m.to_chat_message() for m in history]
        messages.append(ChatMessage(role="user", content=TITLE_PROMPT))
        req = ChatRequest(model=self.model, messages=messages, temperature=self._settings.title_temperature)
        try:
            self._controller.ensure_ready()
            result = await self._controller.provider.chat(req)
        except BusinessError as e:
            log_event(logging.WARNING, "Title generation failed", {"model": self.model}, code=e.code, error=e.message)
            return None
        if not result.choices:
            return None
        title = result.choices[0].message.content.strip().strip('"')
        return title or None

    # ---- 内部实现 ----

    def _call(self, history: List[ConversationMessage]) -> str:
        messages = [ChatMessage(role="system", content=self.system_prompt)]
        messages.extend(m.to_chat_message() for m in history)
        req = ChatRequest(model=self.model, messages=messages, temperature=self._settings.temperature)
        message_id = new_message_id()
        self._controller.start_request(req, message_id)
        return message_id

    def _apply(self, batch: Batch) -> None:
        self._timeline = self._reconciler.apply(self._timeline, batch)
        self._notify()

    def _on_batch(self, batch: Batch) -> None:
        self._apply(batch)
        if self._history_store is not None and any(isinstance(p, FINISHING_PATCHES) for p in batch):
            try:
                self._history_store.save(self._timeline)
            except BusinessError as e:
                log_event(logging.WARNING, "Failed to save chat history", {}, code=e.code, error=e.message)

    def _notify(self) -> None:
        snapshot = self.timeline
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Timeline listener failed")
