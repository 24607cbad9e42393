"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
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
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
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
    """配置设置（使用 Pydantic）。"""

    # ---- 模型服务 ----
    ollama_host: str = Field(default="localhost", description="模型服务主机名")
    ollama_port: int = Field(default=11434, ge=1, le=65535, description="模型服务端口")
    http_timeout: float = Field(default=30.0, ge=1.0, description="HTTP 超时时间（秒）")
    stream_read_timeout: Optional[float] = Field(
        default=None,
        description="流式读取单个分块的超时时间（秒），None 表示不限制",
    )

    # ---- 持久化 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    storage_quota_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1024,
        description="键值存储的写入配额（字节）",
    )
    max_conversations: int = Field(default=50, ge=1, description="持久化保留的最大会话数")
    max_messages_per_conversation: int = Field(
        default=100,
        ge=1,
        description="单个会话持久化保留的最大消息数",
    )
    eviction_ratio: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="配额不足时淘汰的最旧会话比例",
    )
    persist_debounce_seconds: float = Field(
        default=0.25,
        ge=0.0,
        description="流式增量写盘的合并间隔（秒）",
    )

    # ---- 会话 ----
    title_max_chars: int = Field(default=30, ge=1, description="自动标题的最大字符数")

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("ollama_host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        v = (v or "").strip().rstrip("/")
        if not v:
            raise ValueError("ollama_host must not be empty")
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
