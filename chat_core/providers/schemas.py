"""chat/completions 请求与响应的线上 JSON 结构。

用 pydantic 模型在解码时完成校验，替代对字典的层层 .get() 访问：
- RequestEnvelope: 发出的请求体。
- StreamChunkPayload: SSE 中每一行 data: 后的 JSON。
- CompletionPayload: 非流式模式下的完整响应体。

未列出的字段（id、usage、finish_reason 等）一律忽略。
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from chat_core.domain.models import Role


class WireMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Role
    content: str


class RequestEnvelope(BaseModel):
    """一次请求的完整请求体，每次提交都从会话快照重新构建。"""

    model_config = ConfigDict(extra="forbid")

    model: str = Field(min_length=1)
    stream: bool
    messages: List[WireMessage]

    def to_payload(self) -> dict:
        return self.model_dump(mode="json")


class DeltaPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[str] = None
    content: Optional[str] = None


class ChoicePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delta: Optional[DeltaPayload] = None
    message: Optional[DeltaPayload] = None

    @property
    def body(self) -> Optional[DeltaPayload]:
        return self.delta if self.delta is not None else self.message


class StreamChunkPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    choices: List[ChoicePayload]


class CompletionPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    choices: List[ChoicePayload]
