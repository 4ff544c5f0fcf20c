"""配置管理模块。

支持从 .env、config.yaml 以及环境变量（前缀 ASK_）加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("ASK_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """客户端配置。"""

    # ---- Provider 相关配置 ----
    api_key: Optional[str] = Field(default=None, description="OpenAI 兼容 API 密钥，发起请求前必须设置")
    base_url: str = Field(
        default="https://api.openai.com/v1",
        description="chat/completions 所在的 API 基础URL",
    )
    default_model: str = Field(default="gpt-3.5-turbo", description="默认模型 ID")
    system_prompt: str = Field(
        default="You are a helpful assistant",
        description="每次请求前置的 system 消息",
    )
    temperature: float = Field(default=1.0, ge=0.0, le=2.0, description="流式对话温度")
    title_temperature: float = Field(default=0.0, ge=0.0, le=2.0, description="生成标题时的温度")

    # ---- 流式管线 ----
    request_timeout: float = Field(default=150.0, ge=1.0, description="单次请求的总时长上限（秒）")
    flush_interval: float = Field(default=0.1, gt=0.0, le=5.0, description="增量批量推送到 UI 的间隔（秒）")
    max_incomplete_lines: int = Field(
        default=64,
        ge=1,
        description="未闭合帧最多可拼接的行数，超出视为解码错误",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_prefix="ASK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
