"""Endpoint 与模型配置。

集中维护 chat/completions 端点的默认地址与模型名，
运行时可被 settings.base_url / settings.model 覆盖。"""

from dataclasses import dataclass
from typing import Mapping


@dataclass
class ProviderConfig:
    """某个 chat/completions 服务的整体配置。"""

    name: str
    base_url: str
    default_model: str
    completions_path: str = "/chat/completions"

    def endpoint(self, base_url: str | None = None) -> str:
        base = (base_url or self.base_url).rstrip("/")
        return f"{base}{self.completions_path}"


OPENAI_NEXT_CONFIG = ProviderConfig(
    name="openai-next",
    base_url="https://api.openai-next.com/v1",
    default_model="gpt-4o-mini",
)

OPENAI_CONFIG = ProviderConfig(
    name="openai",
    base_url="https://api.openai.com/v1",
    default_model="gpt-4o-mini",
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openai-next": OPENAI_NEXT_CONFIG,
    "openai": OPENAI_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
