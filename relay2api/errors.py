"""
错误分类 - 网关统一异常体系

分类与处理策略：
- AuthError:          凭证被拒绝 (401/403) → 禁用凭证并切换
- TransportError:     网络错误 / 超时 / 429 / 5xx → 换凭证重试
- ProtocolError:      响应结构不符合预期 → 立即返回调用方，不重试
- ConversionError:    协议转换失败（ProtocolError 的子类）
- PoolExhaustedError: 凭证池与降级链都已耗尽 → 本次请求终止
- ConfigurationError: 配置错误（降级链引用未注册的提供商）→ 启动时失败
"""

import re
from typing import Any, List, Optional

__all__ = [
    "RelayError",
    "AuthError",
    "TransportError",
    "ProtocolError",
    "ConversionError",
    "PoolExhaustedError",
    "ConfigurationError",
    "FingerprintUnavailableError",
    "classify_http_status",
    "get_status_code_from_error",
]


class RelayError(Exception):
    """所有网关错误的基类"""

    kind = "relay_error"
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        provider_type: Optional[str] = None,
        credential_uuid: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_type = provider_type
        self.credential_uuid = credential_uuid
        self.body = body

    @property
    def http_status(self) -> int:
        """返回给客户端的 HTTP 状态码"""
        return self.status_code or self.default_status

    def to_dict(self) -> dict:
        data = {"type": self.kind, "message": self.message}
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.provider_type:
            data["provider"] = self.provider_type
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status={self.status_code}, provider={self.provider_type}, msg={self.message!r})"


class AuthError(RelayError):
    kind = "auth_error"
    default_status = 401


class TransportError(RelayError):
    """网络层错误；超时也归入此类（is_timeout=True）"""

    kind = "transport_error"
    default_status = 502

    def __init__(self, message: str, *, is_timeout: bool = False, **kwargs):
        super().__init__(message, **kwargs)
        self.is_timeout = is_timeout


class ProtocolError(RelayError):
    kind = "protocol_error"
    default_status = 502


class ConversionError(ProtocolError):
    kind = "conversion_error"


class PoolExhaustedError(RelayError):
    """
    凭证池耗尽

    Attributes:
        last_error: 最近一次的底层错误（可能为 None：池本身为空）
        attempted_providers: 本次请求尝试过的提供商类型
        fallback_attempted: 是否尝试过降级链
    """

    kind = "pool_exhausted"
    default_status = 503

    def __init__(
        self,
        message: str,
        *,
        last_error: Optional[RelayError] = None,
        attempted_providers: Optional[List[str]] = None,
        fallback_attempted: bool = False,
        **kwargs,
    ):
        if last_error is not None and kwargs.get("status_code") is None:
            kwargs["status_code"] = last_error.status_code
        super().__init__(message, **kwargs)
        self.last_error = last_error
        self.attempted_providers = list(attempted_providers or [])
        self.fallback_attempted = fallback_attempted

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempted_providers"] = self.attempted_providers
        data["fallback_attempted"] = self.fallback_attempted
        if self.last_error is not None:
            data["last_error"] = self.last_error.to_dict()
        return data


class ConfigurationError(RelayError):
    kind = "configuration_error"


class FingerprintUnavailableError(RelayError):
    """指定的 TLS 指纹配置不可用，调用方应回退到通用传输"""

    kind = "fingerprint_unavailable"


def get_status_code_from_error(error_msg: str) -> Optional[int]:
    """从错误消息中提取状态码，如 'Upstream error (429)'"""
    match = re.search(r'\((\d{3})\)', str(error_msg))
    if match:
        return int(match.group(1))
    return None


def classify_http_status(
    status_code: int,
    body: Any = None,
    *,
    provider_type: Optional[str] = None,
    credential_uuid: Optional[str] = None,
) -> Optional[RelayError]:
    """
    将上游 HTTP 状态码映射到错误分类

    Returns:
        对应的异常实例；2xx 返回 None
    """
    if 200 <= status_code < 300:
        return None

    snippet = body if isinstance(body, str) else str(body or "")
    message = f"Upstream error ({status_code}): {snippet[:300]}"
    kwargs = dict(
        status_code=status_code,
        provider_type=provider_type,
        credential_uuid=credential_uuid,
        body=body,
    )

    if status_code in (401, 403):
        return AuthError(message, **kwargs)
    if status_code in (408, 429) or status_code >= 500:
        return TransportError(message, is_timeout=status_code == 408, **kwargs)
    return ProtocolError(message, **kwargs)
