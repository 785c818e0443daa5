"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次递减。
API 密钥只从外部注入（环境变量 API_KEY 或配置文件），代码中不写死。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


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


class ChatSettings(BaseSettings):
    """聊天核心的运行配置。"""

    # ---- Endpoint ----
    api_key: Optional[str] = Field(default=None, description="Chat completion API 密钥（环境变量 API_KEY）")
    provider: str = Field(default="openai-next", description="registry 中的服务名，决定默认端点")
    base_url: Optional[str] = Field(default=None, description="覆盖 registry 中的基础URL")
    model: str = Field(default="gpt-4o-mini", description="请求体中的 model 字段")
    stream: bool = Field(default=True, description="是否以 SSE 流式方式请求")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="固定的系统提示词")
    system_prompt_file: Optional[str] = Field(default=None, description="从文件读取系统提示词（优先于 system_prompt）")

    # ---- Transport ----
    http_timeout: float = Field(default=30.0, ge=1.0, description="连接/读取超时时间（秒）")
    http_total_timeout: float = Field(default=60.0, ge=1.0, description="单次请求总时长上限（秒）")
    accept_any_certificate: bool = Field(
        default=False,
        description="跳过证书校验，仅限开发环境调试使用",
    )
    ca_bundle: Optional[str] = Field(default=None, description="自定义 CA 证书文件路径")

    # ---- Storage / logging ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    conversation_key: str = Field(default="conversation", description="会话在存储中的固定键")
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

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        # 长度等有效性检查放到发请求前（ChatCompletionClient），这里只做规范化
        if v is not None:
            v = v.strip() or None
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


settings = ChatSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = ChatSettings
