"""HTTP 传输层。

负责发出 POST 请求，并以两种形式暴露响应：
- post(): 一次性返回完整响应体；
- stream(): 随时间逐块产出原始字节。

非 2xx 状态码直接转换成 ApiError/RateLimitError，响应体不做任何 JSON 解析。
证书校验策略通过 TrustPolicy 显式注入，默认使用标准校验。
"""

import logging
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Union

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError
from chat_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class TrustPolicy:
    """证书校验策略。

    accept_any_certificate=True 会完全跳过服务端证书校验，只能用于本地调试
    （例如走自签名证书的代理），生产环境必须保持默认值 False。
    """

    accept_any_certificate: bool = False
    ca_bundle: Optional[str] = None

    @classmethod
    def from_settings(cls, cfg=settings) -> "TrustPolicy":
        return cls(
            accept_any_certificate=bool(getattr(cfg, "accept_any_certificate", False)),
            ca_bundle=getattr(cfg, "ca_bundle", None),
        )

    def httpx_verify(self) -> Union[bool, ssl.SSLContext]:
        if self.accept_any_certificate:
            logger.warning(
                "TLS certificate verification disabled (development only)",
                extra={"extra": {"trust_policy": "accept_any"}},
            )
            return False
        if self.ca_bundle:
            return ssl.create_default_context(cafile=self.ca_bundle)
        return True


class HttpTransport:
    """基于 httpx 的同步传输实现，调用方负责把它放到后台线程执行。

    两种模式都按块读取响应体，并在块与块之间检查总时长上限
    （http_total_timeout），超时抛出 NetworkError(code="TIMEOUT")。
    """

    def __init__(self, cfg=settings, trust_policy: Optional[TrustPolicy] = None):
        self._settings = cfg
        self._trust_policy = trust_policy or TrustPolicy.from_settings(cfg)
        self._closed = threading.Event()
        self._active: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    @property
    def trust_policy(self) -> TrustPolicy:
        return self._trust_policy

    # ---- 完整响应 ----

    def post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> bytes:
        started = time.monotonic()
        body = b"".join(self._read(url, payload, headers))
        self._log(logging.INFO, "Response received", url=url, size=len(body), elapsed=round(time.monotonic() - started, 3))
        return body

    # ---- 流式响应 ----

    def stream(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Iterator[bytes]:
        total = 0
        for chunk in self._read(url, payload, headers):
            total += len(chunk)
            yield chunk
        self._log(logging.INFO, "Stream finished", url=url, size=total)

    def close(self) -> None:
        """使当前传输失效；进行中的请求在下一个数据块处停止，不再产出任何数据。"""
        self._closed.set()
        with self._lock:
            client = self._active
        if client is not None:
            try:
                client.close()
            except RuntimeError as e:
                self._log(logging.WARNING, "Close raced with active stream", error=str(e))

    def reopen(self) -> None:
        self._closed.clear()

    # ---- 辅助方法 ----

    def _read(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Iterator[bytes]:
        deadline = time.monotonic() + float(getattr(self._settings, "http_total_timeout", 60.0))
        client: Optional[httpx.Client] = None
        try:
            client = self._client()
            with client:
                with client.stream("POST", url, json=payload, headers=headers) as resp:
                    self._check_status(resp.status_code, url)
                    for chunk in resp.iter_bytes():
                        if self._closed.is_set():
                            self._log(logging.INFO, "Transport closed mid-response", url=url)
                            return
                        if time.monotonic() > deadline:
                            raise NetworkError(code="TIMEOUT", message="网络错误: 请求超时")
                        if chunk:
                            yield chunk
        except httpx.TimeoutException as e:
            raise NetworkError(code="TIMEOUT", message=f"网络错误: 请求超时 ({e})")
        except httpx.RequestError as e:
            if self._closed.is_set():
                return
            raise NetworkError(code="NETWORK_ERROR", message=f"网络错误: {e}")
        finally:
            if client is not None:
                self._release(client)

    def _client(self) -> httpx.Client:
        timeout = float(getattr(self._settings, "http_timeout", 30.0))
        client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=timeout),
            verify=self._trust_policy.httpx_verify(),
            trust_env=False,
        )
        with self._lock:
            self._active = client
        return client

    def _release(self, client: httpx.Client) -> None:
        # 只清除自己持有的 client，较新的请求可能已经换上了新的
        with self._lock:
            if self._active is client:
                self._active = None

    def _check_status(self, status_code: int, url: str) -> None:
        if 200 <= status_code < 300:
            return
        self._log(logging.WARNING, "Non-success status", url=url, status_code=status_code)
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"HTTP 错误: {status_code}", http_status=status_code)
        raise ApiError(code="API_ERROR", message=f"HTTP 错误: {status_code}", http_status=status_code)

    @staticmethod
    def _log(level: int, message: str, **fields: Any) -> None:
        logger.log(level, message, extra={"extra": fields})
