"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional

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
    """配置设置（使用 Pydantic）。"""

    # ---- 模型网关 ----
    gemini_api_key: Optional[str] = Field(default=None, description="Gemini API 密钥")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST API 基础URL",
    )
    model_candidates: List[str] = Field(
        default_factory=lambda: ["gemini-2.5-pro", "gemini-2.5-flash", "gemini-2.5-flash-lite"],
        description="候选模型列表，按质量从高到低排列，限流时依次降级",
    )
    http_timeout: float = Field(default=30.0, ge=1.0, description="单个候选模型的 HTTP 超时时间（秒）")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    max_context_messages: int = Field(default=40, ge=1, le=200, description="发给模型的最大历史消息数")

    # ---- 幂等缓存 ----
    idempotency_max_entries: int = Field(default=10_000, ge=1, description="幂等键缓存的最大条目数")
    idempotency_ttl_seconds: float = Field(default=86_400.0, gt=0, description="幂等键的保留时长（秒）")

    # ---- 流式输出节奏 ----
    stream_chunk_words: int = Field(default=3, ge=1, description="每个增量帧包含的词数")
    stream_delay_ms: int = Field(default=15, ge=0, description="增量帧之间的间隔（毫秒）")

    # ---- 客户端 ----
    api_base_url: str = Field(default="http://localhost:4000", description="客户端访问的服务端地址")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("gemini_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip() or None
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("model_candidates")
    @classmethod
    def validate_candidates(cls, v: List[str]) -> List[str]:
        cleaned = [name.strip() for name in v if name and name.strip()]
        if not cleaned:
            raise ValueError("model_candidates must contain at least one model")
        return cleaned

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
            _load_config_from_yaml,
            file_secret_settings,
        )


settings = Settings()
