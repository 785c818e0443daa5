"""系统提示词加载工具。

每次请求的 messages 都以同一条 system 消息开头。默认取 settings.system_prompt，
配置了 system_prompt_file 时从该文件读取。
"""

from pathlib import Path

from chat_core.config.settings import DEFAULT_SYSTEM_PROMPT, settings
from chat_core.domain.exceptions import ConfigurationError


def load_system_prompt(cfg=settings) -> str:
    path = getattr(cfg, "system_prompt_file", None)
    if path:
        try:
            text = Path(path).expanduser().read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigurationError(code="PROMPT_READ_ERROR", message=f"系统提示词读取失败: {e}")
        if text:
            return text
    return getattr(cfg, "system_prompt", None) or DEFAULT_SYSTEM_PROMPT
