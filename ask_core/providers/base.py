"""Provider 抽象接口。

控制器不直接依赖具体厂商的 HTTP 调用，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 OpenAIClient）。
- stream_chat 只负责把原始文本片段按到达顺序交出来，帧的解析由 StreamDecoder 完成。
"""

from typing import AsyncIterator, Protocol

from ask_core.domain.models import ChatRequest, ChatResult


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。"""

    name: str

    def ensure_configured(self) -> None:
        """缺少凭证时抛出 ConfigurationError。"""

        ...

    def stream_chat(self, req: ChatRequest) -> AsyncIterator[str]:
        """执行一次流式调用，逐个产出原始文本片段（不与帧边界对齐）。"""

        ...

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...
