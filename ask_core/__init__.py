"""Ask Core 顶层包。

该包提供桌面 LLM 对话客户端的核心实现，
包括配置加载、领域模型、Provider 适配、流式补全管线
（解码、批量聚合、请求控制、消息合并）以及对话持久化。
"""

from ask_core.api.service import ChatService

__all__ = ["ChatService"]
