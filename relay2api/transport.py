"""
传输层

两种实现，启动时由 select_transport() 选定一次：
- FingerprintTransport: curl_cffi AsyncSession，模拟浏览器 TLS 指纹
- GenericTransport:     原生 httpx.AsyncClient

两者对外接口一致：request() 返回完整的 TransportResponse，
stream() 是异步上下文管理器，产出带行/字节迭代器的 StreamResponse。
超时与网络错误统一转换为 TransportError。

环境变量:
- TLS_IMPERSONATE_ENABLED: 是否启用 TLS 伪装 (默认: true)
- TLS_IMPERSONATE_TARGET: 伪装目标 (默认: chrome131)
"""

import codecs
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from log import log

from .errors import FingerprintUnavailableError, TransportError

# 尝试导入 curl_cffi
try:
    from curl_cffi import CurlError
    from curl_cffi.requests import AsyncSession as CurlAsyncSession
    CURL_CFFI_AVAILABLE = True
except ImportError:
    CurlError = None
    CurlAsyncSession = None
    CURL_CFFI_AVAILABLE = False

__all__ = [
    "CURL_CFFI_AVAILABLE",
    "DEFAULT_PROFILE",
    "SUPPORTED_PROFILES",
    "TransportResponse",
    "StreamResponse",
    "Transport",
    "GenericTransport",
    "FingerprintTransport",
    "select_transport",
]

DEFAULT_PROFILE = "chrome131"
DEFAULT_TIMEOUT = 30.0
DEFAULT_STREAM_TIMEOUT = 120.0

# curl_cffi 支持的浏览器指纹
SUPPORTED_PROFILES = [
    "chrome", "chrome110", "chrome116", "chrome119", "chrome120", "chrome123",
    "chrome124", "chrome131", "chrome131_android",
    "safari", "safari17_0", "safari18_0", "safari18_0_ios",
    "edge", "edge101",
    "firefox",
]


@dataclass
class TransportResponse:
    """完整读取的 HTTP 响应"""

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class StreamResponse:
    """流式响应：状态码、响应头，以及按块 / 按行的异步迭代"""

    def __init__(self, status_code: int, headers: Dict[str, str], chunks: AsyncIterator[bytes]):
        self.status_code = status_code
        self.headers = headers
        self._chunks = chunks

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self._chunks:
            if chunk:
                yield chunk

    async def aiter_lines(self) -> AsyncIterator[str]:
        buffer = ""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in self.aiter_bytes():
            buffer += decoder.decode(chunk)
            while "\n" in buffer:
                line, buffer = buffer.split("\n", 1)
                yield line.rstrip("\r")
        if buffer:
            yield buffer

    async def aread(self) -> bytes:
        parts: List[bytes] = []
        async for chunk in self.aiter_bytes():
            parts.append(chunk)
        return b"".join(parts)


class Transport(ABC):
    """传输策略接口"""

    name = "transport"

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT,
                 stream_timeout: float = DEFAULT_STREAM_TIMEOUT, proxy: Optional[str] = None):
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self.proxy = proxy

    @abstractmethod
    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        timeout: Optional[float] = None,
        profile: Optional[str] = None,
    ) -> TransportResponse:
        ...

    @abstractmethod
    def stream(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        timeout: Optional[float] = None,
        profile: Optional[str] = None,
    ):
        """异步上下文管理器，产出 StreamResponse"""
        ...

    async def aclose(self) -> None:
        pass

    def status(self) -> Dict[str, Any]:
        return {"name": self.name, "timeout": self.timeout, "stream_timeout": self.stream_timeout}


# ====================== httpx ======================

class GenericTransport(Transport):
    """原生 httpx 传输"""

    name = "httpx"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            client_kwargs: Dict[str, Any] = {"timeout": self.timeout}
            if self.proxy:
                client_kwargs["proxy"] = self.proxy
            self._client = httpx.AsyncClient(**client_kwargs)
        return self._client

    async def request(self, method, url, *, headers=None, json_body=None, data=None,
                      timeout=None, profile=None) -> TransportResponse:
        try:
            resp = await self._get_client().request(
                method, url, headers=headers, json=json_body, content=data,
                timeout=timeout or self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Request to {url} timed out: {e}", is_timeout=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {type(e).__name__}: {e}") from e
        return TransportResponse(resp.status_code, dict(resp.headers), resp.content)

    @asynccontextmanager
    async def stream(self, method, url, *, headers=None, json_body=None, data=None,
                     timeout=None, profile=None):
        client = self._get_client()
        try:
            async with client.stream(
                method, url, headers=headers, json=json_body, content=data,
                timeout=timeout or self.stream_timeout,
            ) as resp:
                yield StreamResponse(resp.status_code, dict(resp.headers), self._iter(resp, url))
        except httpx.TimeoutException as e:
            raise TransportError(f"Stream from {url} timed out: {e}", is_timeout=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Stream from {url} failed: {type(e).__name__}: {e}") from e

    @staticmethod
    async def _iter(resp: httpx.Response, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.aiter_bytes():
                yield chunk
        except httpx.TimeoutException as e:
            raise TransportError(f"Stream from {url} timed out: {e}", is_timeout=True) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Stream from {url} broke: {type(e).__name__}: {e}") from e

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# ====================== curl_cffi ======================

def _is_timeout(error: Exception) -> bool:
    return "timed out" in str(error).lower() or "timeout" in type(error).__name__.lower()


class FingerprintTransport(Transport):
    """
    curl_cffi 传输，模拟浏览器 TLS 指纹

    Raises:
        FingerprintUnavailableError: curl_cffi 未安装或指纹配置不受支持
    """

    name = "curl_cffi"

    def __init__(self, profile: str = DEFAULT_PROFILE, **kwargs):
        if not CURL_CFFI_AVAILABLE:
            raise FingerprintUnavailableError("curl_cffi is not installed")
        if profile not in SUPPORTED_PROFILES:
            raise FingerprintUnavailableError(f"Unsupported impersonation profile '{profile}'")
        super().__init__(**kwargs)
        self.profile = profile
        self._session = None

    def _get_session(self):
        if self._session is None:
            proxies = {"http": self.proxy, "https": self.proxy} if self.proxy else None
            self._session = CurlAsyncSession(impersonate=self.profile, timeout=self.timeout, proxies=proxies)
        return self._session

    def _resolve_profile(self, profile: Optional[str]) -> str:
        if profile and profile != self.profile:
            if profile not in SUPPORTED_PROFILES:
                raise FingerprintUnavailableError(f"Unsupported impersonation profile '{profile}'")
            return profile
        return self.profile

    async def request(self, method, url, *, headers=None, json_body=None, data=None,
                      timeout=None, profile=None) -> TransportResponse:
        impersonate = self._resolve_profile(profile)
        try:
            resp = await self._get_session().request(
                method, url, headers=headers, json=json_body, data=data,
                timeout=timeout or self.timeout, impersonate=impersonate,
            )
        except CurlError as e:
            raise TransportError(f"Request to {url} failed: {e}", is_timeout=_is_timeout(e)) from e
        return TransportResponse(resp.status_code, dict(resp.headers), resp.content)

    @asynccontextmanager
    async def stream(self, method, url, *, headers=None, json_body=None, data=None,
                     timeout=None, profile=None):
        impersonate = self._resolve_profile(profile)
        try:
            resp = await self._get_session().request(
                method, url, headers=headers, json=json_body, data=data,
                timeout=timeout or self.stream_timeout, impersonate=impersonate, stream=True,
            )
        except CurlError as e:
            raise TransportError(f"Stream from {url} failed: {e}", is_timeout=_is_timeout(e)) from e
        try:
            yield StreamResponse(resp.status_code, dict(resp.headers), self._iter(resp, url))
        finally:
            await resp.aclose()

    @staticmethod
    async def _iter(resp, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.aiter_content():
                yield chunk
        except CurlError as e:
            raise TransportError(f"Stream from {url} broke: {e}", is_timeout=_is_timeout(e)) from e

    async def aclose(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def status(self) -> Dict[str, Any]:
        data = super().status()
        data["profile"] = self.profile
        return data


def select_transport(
    *,
    impersonate: bool = True,
    profile: str = DEFAULT_PROFILE,
    timeout: float = DEFAULT_TIMEOUT,
    stream_timeout: float = DEFAULT_STREAM_TIMEOUT,
    proxy: Optional[str] = None,
) -> Transport:
    """
    启动时选择传输实现

    请求指纹伪装但不可用时回退到 httpx，并记录一次警告。
    """
    kwargs = {"timeout": timeout, "stream_timeout": stream_timeout, "proxy": proxy}
    if impersonate:
        try:
            transport = FingerprintTransport(profile, **kwargs)
        except FingerprintUnavailableError as e:
            log.warning(f"TLS impersonation unavailable ({e}), falling back to httpx", tag="TRANSPORT")
        else:
            log.info(f"TLS impersonation enabled, profile: {profile}", tag="TRANSPORT")
            return transport
    log.debug("Using plain httpx transport", tag="TRANSPORT")
    return GenericTransport(**kwargs)
