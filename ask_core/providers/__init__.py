"""LLM Provider 集成层。

该包下的模块负责：
- 定义 Provider 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供具体实现 (openai_client)。
"""

from typing import Optional

from ask_core.config.settings import settings
from ask_core.providers.base import ProviderClient
from ask_core.providers.openai_client import OpenAIClient


def create_provider(name: Optional[str] = None, cfg=None) -> ProviderClient:
    """根据名称创建 Provider 实例，目前只有 OpenAI 兼容实现。"""

    provider_name = (name or "openai").lower()
    if provider_name != "openai":
        raise KeyError(f"Unknown provider: {name!r}")
    return OpenAIClient(cfg or settings)
