"""时间线展示用的小工具。"""

from typing import Optional, Sequence

from ask_core.domain.models import ConversationMessage


def format_duration(duration_ms: int) -> str:
    """1 秒以内显示毫秒，否则显示一位小数的秒数。"""
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    return f"{duration_ms / 1000:.1f}s"


def message_footer(message: ConversationMessage) -> str:
    """消息下方的状态行：耗时 / 已停止 / 思考中。"""
    if message.is_thinking:
        return "thinking..."
    if message.is_canceled:
        return "stopped"
    if message.response_time_ms is not None and message.role == "assistant":
        return format_duration(message.response_time_ms)
    return ""


def has_finished_reply(timeline: Sequence[ConversationMessage]) -> bool:
    """时间线中是否已有一条正常结束的助手回复（用于触发标题生成）。"""
    return any(
        m.role == "assistant" and not m.is_thinking and not m.is_error and not m.is_canceled
        for m in timeline
    )


def window_title(title: Optional[str] = None) -> str:
    return f"Ask - {title}" if title else "Ask"
