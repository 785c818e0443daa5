"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于会话控制器统一捕获，并把 message 作为诊断文本写入助手消息。
"""


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "NETWORK_ERROR"）。
        message: 用户可读错误信息，会直接展示在助手回复的位置。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 status_code、provider 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、超时、TLS 握手失败等。"""


class ApiError(BusinessError):
    """远端返回非 2xx 状态码时抛出。"""


class RateLimitError(ApiError):
    """远端返回 429。本项目不做重试/退避，直接作为诊断展示。"""


class EnvelopeDecodeError(BusinessError):
    """请求体序列化失败，或非流式响应体无法解析。"""


class ValidationError(BusinessError):
    """参数或状态校验失败。"""


class ConfigurationError(ValidationError):
    """配置缺失（如未设置 API_KEY），在发起任何网络请求前抛出。"""


class PersistenceError(BusinessError):
    """会话持久化读写失败，由存储层记录日志后吞掉，不影响对话流程。"""
