"""时间线消息补丁（tagged variant）。

控制器与聚合器只产生下列五种补丁，Reconciler 按类型显式分派，
不再依赖“某字段是否存在”的判断：

- NewMessage: 创建一条新消息（用户消息或助手占位消息）。
- ContentDelta: 向流式消息追加一段内容。
- TerminalSuccess: 最后一段内容 + 结束标记 + 耗时。
- TerminalError: 失败，携带可读的错误原因。
- Canceled: 会话被用户取消。
"""

from dataclasses import dataclass
from typing import List, Optional, Union

from .models import ConversationMessage, Role


@dataclass(frozen=True)
class NewMessage:
    message_id: str
    role: Role
    content: str = ""
    is_thinking: bool = False

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(
            id=self.message_id,
            role=self.role,
            content=self.content,
            is_thinking=self.is_thinking,
        )


@dataclass(frozen=True)
class ContentDelta:
    message_id: str
    text: str

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(id=self.message_id, role="assistant", content=self.text, is_thinking=True)


@dataclass(frozen=True)
class TerminalSuccess:
    message_id: str
    text: str = ""
    response_time_ms: Optional[int] = None

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(
            id=self.message_id,
            role="assistant",
            content=self.text,
            response_time_ms=self.response_time_ms,
        )


@dataclass(frozen=True)
class TerminalError:
    message_id: str
    reason: str
    response_time_ms: Optional[int] = None

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(
            id=self.message_id,
            role="assistant",
            content=self.reason,
            is_error=True,
            response_time_ms=self.response_time_ms,
        )


@dataclass(frozen=True)
class Canceled:
    message_id: str

    def to_message(self) -> ConversationMessage:
        return ConversationMessage(id=self.message_id, role="assistant", is_canceled=True)


MessagePatch = Union[NewMessage, ContentDelta, TerminalSuccess, TerminalError, Canceled]

# 两次 flush 之间积累的补丁，按到达顺序排列
Batch = List[MessagePatch]
