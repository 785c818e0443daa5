"""chat/completions 客户端。

- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>
- 请求体: RequestEnvelope（model/stream/messages）

API 密钥缺失或明显无效（过短）时，在发起任何网络请求之前抛出 ConfigurationError。
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

from pydantic import ValidationError as SchemaError

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ConfigurationError, EnvelopeDecodeError
from chat_core.domain.models import Message
from chat_core.infrastructure.logging.logger import logger
from chat_core.prompts import load_system_prompt
from chat_core.providers.base import Transport
from chat_core.providers.registry import ProviderConfig, get_provider_config
from chat_core.providers.schemas import RequestEnvelope, WireMessage
from chat_core.providers.sse import CompletionDecoder, FrameDecoder, ResponseDecoder
from chat_core.providers.transport import HttpTransport

MIN_API_KEY_LENGTH = 10


class ChatCompletionClient:
    """OpenAI 风格 chat/completions 接口的客户端实现。"""

    def __init__(self, cfg=settings, transport: Optional[Transport] = None):
        self._settings = cfg
        self._provider: ProviderConfig = get_provider_config(getattr(cfg, "provider", "openai-next"))
        self._transport: Transport = transport or HttpTransport(cfg)
        self.name = self._provider.name

    @property
    def endpoint(self) -> str:
        return self._provider.endpoint(getattr(self._settings, "base_url", None))

    @property
    def model(self) -> str:
        return getattr(self._settings, "model", None) or self._provider.default_model

    @property
    def stream_enabled(self) -> bool:
        return bool(getattr(self._settings, "stream", True))

    def build_envelope(self, history: List[Message], system_prompt: Optional[str] = None) -> RequestEnvelope:
        """由完整会话历史构建请求体，系统提示词固定放在最前面。"""
        prompt = system_prompt or load_system_prompt(self._settings)
        try:
            msgs = [WireMessage(role="system", content=prompt)]
            msgs.extend(WireMessage(role=m.role, content=m.content) for m in history)
            return RequestEnvelope(model=self.model, stream=self.stream_enabled, messages=msgs)
        except SchemaError as e:
            raise EnvelopeDecodeError(code="REQUEST_ENCODE_ERROR", message=f"请求体序列化错误: {e.error_count()} invalid field(s)")

    def open(self, envelope: RequestEnvelope) -> Iterator[bytes]:
        headers = self._headers()
        payload = envelope.to_payload()
        logger.info(
            "Calling chat completion",
            extra={"extra": {
                "provider": self.name,
                "model": envelope.model,
                "stream": envelope.stream,
                "message_count": len(envelope.messages),
            }},
        )
        if envelope.stream:
            return self._transport.stream(self.endpoint, payload, headers)
        return self._single(payload, headers)

    def new_decoder(self, envelope: RequestEnvelope) -> ResponseDecoder:
        if envelope.stream:
            return FrameDecoder()
        return CompletionDecoder()

    def close(self) -> None:
        self._transport.close()

    # ---- 辅助方法 ----

    def _single(self, payload: Dict[str, Any], headers: Dict[str, str]) -> Iterator[bytes]:
        yield self._transport.post(self.endpoint, payload, headers)

    def _headers(self) -> Dict[str, str]:
        api_key = getattr(self._settings, "api_key", None)
        if not api_key:
            logger.log(logging.ERROR, "API key missing, request not sent", extra={"extra": {"provider": self.name}})
            raise ConfigurationError(code="MISSING_API_KEY", message="API_KEY 环境变量未设置")
        if len(api_key) < MIN_API_KEY_LENGTH:
            logger.log(logging.ERROR, "API key too short, request not sent", extra={"extra": {"provider": self.name}})
            raise ConfigurationError(code="INVALID_API_KEY", message="API_KEY 无效（长度不足）")
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
