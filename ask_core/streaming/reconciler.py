"""时间线合并：把一批补丁按消息 id 合并进有序的消息列表。

规则：
- id 不存在：由补丁构造一条新消息追加到末尾。
- id 已存在：按补丁类型合并，内容只追加不替换（错误原因除外）。
- 已经结束（is_thinking=False）的消息不再变化，后续补丁被忽略。
- 任何非错误补丁到达时，移除其他 id 的错误消息，避免旧错误和成功的重试并存。
"""

from dataclasses import replace
from typing import List, Optional, Sequence

from ask_core.domain.models import ConversationMessage
from ask_core.domain.patches import (
    Batch,
    Canceled,
    ContentDelta,
    MessagePatch,
    NewMessage,
    TerminalError,
    TerminalSuccess,
)


class MessageReconciler:
    def apply(self, timeline: Sequence[ConversationMessage], batch: Batch) -> List[ConversationMessage]:
        """返回新的时间线；输入列表和其中的消息都不会被修改。"""
        result = list(timeline)
        for patch in batch:
            result = self._apply_patch(result, patch)
        return result

    @staticmethod
    def retry_history(timeline: Sequence[ConversationMessage]) -> List[ConversationMessage]:
        """重试时重新提交的历史：去掉错误消息和仍在生成的消息。"""
        return [m for m in timeline if not m.is_error and not m.is_thinking]

    def _apply_patch(self, timeline: List[ConversationMessage], patch: MessagePatch) -> List[ConversationMessage]:
        if not isinstance(patch, TerminalError):
            timeline = [m for m in timeline if not m.is_error or m.id == patch.message_id]

        idx = self._index_of(timeline, patch.message_id)
        if idx is None:
            timeline.append(patch.to_message())
            return timeline

        current = timeline[idx]
        if not current.is_thinking:
            return timeline
        timeline[idx] = self._merge(current, patch)
        return timeline

    @staticmethod
    def _merge(current: ConversationMessage, patch: MessagePatch) -> ConversationMessage:
        if isinstance(patch, NewMessage):
            return patch.to_message()
        if isinstance(patch, ContentDelta):
            return replace(current, content=current.content + patch.text)
        if isinstance(patch, TerminalSuccess):
            return replace(
                current,
                content=current.content + patch.text,
                is_thinking=False,
                response_time_ms=patch.response_time_ms,
            )
        if isinstance(patch, TerminalError):
            return replace(
                current,
                content=patch.reason,
                is_error=True,
                is_thinking=False,
                response_time_ms=patch.response_time_ms,
            )
        if isinstance(patch, Canceled):
            return replace(current, is_canceled=True, is_thinking=False)
        raise TypeError(f"Unknown patch type: {type(patch).__name__}")

    @staticmethod
    def _index_of(timeline: List[ConversationMessage], message_id: str) -> Optional[int]:
        for i, m in enumerate(timeline):
            if m.id == message_id:
                return i
        return None
