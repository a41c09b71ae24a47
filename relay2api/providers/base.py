"""
提供商客户端基类

每个提供商客户端把已经转换好的 native 请求发往上游：
- send(native_request, credential, stream) → dict 或 native 块的异步迭代器
- sync_usage(credential) → 用量 / token 刷新快照（后台刷新使用）

客户端只负责传输与错误分类（AuthError / TransportError / ProtocolError），
不做协议转换，也不修改凭证池状态。
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Union

from log import log

from ..errors import ProtocolError, RelayError, classify_http_status
from ..models import Protocol
from ..pool.credential import CredentialRecord
from ..sse import NDJSONParser, SSEParser, is_done
from ..transport import StreamResponse, Transport, TransportResponse

__all__ = ["ProviderConfig", "ProviderClient", "NativeResult"]

NativeResult = Union[Dict[str, Any], AsyncIterator[Dict[str, Any]]]


@dataclass
class ProviderConfig:
    """提供商配置（凭证 secret 中的同名字段优先）"""

    provider_type: str
    base_url: str = ""
    timeout: float = 30.0
    stream_timeout: float = 120.0
    profile: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, provider_type: str, data: Optional[Dict[str, Any]]) -> "ProviderConfig":
        data = dict(data or {})
        return cls(
            provider_type=provider_type,
            base_url=str(data.pop("base_url", "") or ""),
            timeout=float(data.pop("timeout", 30.0)),
            stream_timeout=float(data.pop("stream_timeout", 120.0)),
            profile=data.pop("profile", None),
            extra=data,
        )


class ProviderClient(ABC):
    """提供商客户端基类，子类必须实现 send"""

    protocol: Protocol = Protocol.OPENAI
    default_base_url = ""
    # native 请求中需要在发送前移除的路由字段
    routing_fields = ("model", "stream")

    def __init__(self, transport: Transport, config: Optional[ProviderConfig] = None,
                 provider_type: Optional[str] = None):
        self.transport = transport
        self.config = config or ProviderConfig(provider_type or self.protocol.value)
        self.provider_type = provider_type or self.config.provider_type

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.provider_type})"

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    @abstractmethod
    async def send(self, native_request: Dict[str, Any], credential: CredentialRecord,
                   stream: bool = False) -> NativeResult:
        """发送 native 请求；stream=True 时返回 native 块的异步迭代器"""

    async def sync_usage(self, credential: CredentialRecord) -> Dict[str, Any]:
        """默认没有用量接口：同步即视为成功"""
        return {}

    # ------------------------------------------------------------------
    # 辅助
    # ------------------------------------------------------------------

    def base_url(self, credential: CredentialRecord) -> str:
        url = credential.secret.get("base_url") or self.config.base_url or self.default_base_url
        return str(url).rstrip("/")

    def split_routing_fields(self, native_request: Dict[str, Any]):
        """(请求体副本, {model, stream ...})"""
        body = dict(native_request)
        routing = {key: body.pop(key) for key in self.routing_fields if key in body}
        return body, routing

    def _error(self, status_code: int, body: Any, credential: CredentialRecord) -> Optional[RelayError]:
        return classify_http_status(
            status_code, body,
            provider_type=self.provider_type,
            credential_uuid=credential.uuid,
        )

    def check_response(self, resp: TransportResponse, credential: CredentialRecord) -> None:
        error = self._error(resp.status_code, resp.text, credential)
        if error is not None:
            log.warning(
                f"{self.provider_type} returned {resp.status_code} for {credential.display_name}",
                tag="PROVIDER",
            )
            raise error

    async def check_stream(self, resp: StreamResponse, credential: CredentialRecord) -> None:
        if resp.ok:
            return
        body = (await resp.aread()).decode("utf-8", errors="replace")
        error = self._error(resp.status_code, body, credential)
        if error is not None:
            log.warning(
                f"{self.provider_type} stream returned {resp.status_code} for {credential.display_name}",
                tag="PROVIDER",
            )
            raise error

    def decode_json(self, resp: TransportResponse) -> Dict[str, Any]:
        try:
            data = resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                f"{self.provider_type} returned non-JSON body: {resp.text[:200]}",
                provider_type=self.provider_type,
            ) from e
        if not isinstance(data, dict):
            raise ProtocolError(f"{self.provider_type} returned non-object JSON", provider_type=self.provider_type)
        return data

    async def post_json(self, url: str, headers: Dict[str, str], body: Any,
                        credential: CredentialRecord) -> Dict[str, Any]:
        resp = await self.transport.request(
            "POST", url, headers=headers, json_body=body,
            timeout=self.config.timeout, profile=self.config.profile,
        )
        self.check_response(resp, credential)
        return self.decode_json(resp)

    async def stream_sse(self, url: str, headers: Dict[str, str], body: Any,
                         credential: CredentialRecord, ndjson: bool = False) -> AsyncIterator[Dict[str, Any]]:
        """打开流式请求并逐个产出解析后的事件（[DONE] 也原样产出）"""
        parser = NDJSONParser() if ndjson else SSEParser()
        async with self.transport.stream(
            "POST", url, headers=headers, json_body=body,
            timeout=self.config.stream_timeout, profile=self.config.profile,
        ) as resp:
            await self.check_stream(resp, credential)
            async for chunk in resp.aiter_bytes():
                for event in parser.feed(chunk):
                    yield event
                    if is_done(event):
                        return
            for event in parser.flush():
                yield event
