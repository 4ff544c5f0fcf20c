"""统一的对话与流式协议数据模型。

本模块定义了客户端内部共享的标准数据结构：

- ChatMessage: 发给 Provider 的一条消息（system/user/assistant）。
- ChatRequest: 发给底层 LLM Provider 的完整请求。
- ChatResult: 非流式调用（如生成标题）解析后的统一响应结果。
- ConversationMessage: UI 时间线上的一条消息，流式期间只追加内容。
- ProtocolFrame: 流式解码出的单个协议帧（增量、结束标记或结束哨兵）。

Provider 适配器只依赖这些模型，并负责在各家 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional, Any, Dict, List


# LLM 消息角色类型（与 OpenAI 等厂商的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息，既可用于请求，也可用于响应。

    - meta: 附加元数据，不直接发给 Provider，主要用于日志。
    """

    role: Role
    content: str
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatRequest:
    """一次完整的聊天请求。

    model 为厂商真实模型 ID（如 "gpt-3.5-turbo"），由用户在设置中选择。
    """

    model: str
    messages: List[ChatMessage]
    temperature: float = 1.0
    max_tokens: Optional[int] = None
    n: int = 1


@dataclass
class ChatUsage:
    """Provider 返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。

    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    provider: str
    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None


@dataclass
class ConversationMessage:
    """时间线上的一条消息。

    id 在同一时间线内唯一。is_thinking=True 表示助手仍在流式输出，
    此时 response_time_ms 必须为空；is_thinking 变为 False 之后消息不再变化，
    重试会生成新的消息而不是修改旧消息。
    """

    id: str
    role: Role
    content: str = ""
    is_thinking: bool = False
    is_error: bool = False
    is_canceled: bool = False
    response_time_ms: Optional[int] = None

    def to_chat_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class FrameKind(str, Enum):
    """协议帧类型。"""

    DELTA = "delta"  # 普通内容增量
    FINISH = "finish"  # 带 finish_reason 的最后一个增量
    DONE = "done"  # 结束哨兵 [DONE]


@dataclass(frozen=True)
class ProtocolFrame:
    """流式解码出的一个协议帧，由聚合器立即消费。"""

    kind: FrameKind
    text: str = ""
    finish_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind is not FrameKind.DELTA
