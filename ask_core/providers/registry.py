"""Provider 与模型配置。

设置界面里展示的是“逻辑模型名”，真正发给厂商的是 provider_model；
未登记的名称原样透传，便于直接填写新模型 ID。"""

from dataclasses import dataclass
from typing import Dict, List, Mapping


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]


OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    models={
        "gpt-3.5-turbo": ModelConfig(
            logical_name="gpt-3.5-turbo",
            provider_model="gpt-3.5-turbo",
        ),
        "gpt-4": ModelConfig(
            logical_name="gpt-4",
            provider_model="gpt-4",
        ),
        "gpt-4o-mini": ModelConfig(
            logical_name="gpt-4o-mini",
            provider_model="gpt-4o-mini",
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai": OPENAI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")


def resolve_model(cfg: ProviderConfig, name: str) -> str:
    """逻辑模型名 -> 厂商模型 ID。"""

    model_cfg = cfg.models.get(name)
    return model_cfg.provider_model if model_cfg else name


def model_choices(cfg: ProviderConfig = OPENAI_CONFIG) -> List[str]:
    return list(cfg.models)
