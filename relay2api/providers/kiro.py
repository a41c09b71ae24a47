"""
Kiro (IDE 助手) 客户端 (claude-kiro-oauth)

上游返回 AWS event-stream 二进制帧。这里不解析帧头，而是在字节流中
扫描 {"content": / {"name": / {"input": / {"stop": ... 开头的 JSON 负载，
按括号配对截取完整对象。

非流式请求把所有事件收集为 {"events": [...]}。
sync_usage 通过 refreshToken 换取新的 accessToken。
"""

import codecs
import json
import time
from typing import Any, AsyncIterator, Dict, List, Optional

from log import log

from ..errors import AuthError
from ..models import Protocol
from ..pool.credential import CredentialRecord
from .base import NativeResult, ProviderClient

__all__ = ["KiroClient", "KiroEventParser"]

DEFAULT_REGION = "us-east-1"
EVENT_MARKERS = (
    '{"content":',
    '{"name":',
    '{"toolUseId":',
    '{"input":',
    '{"stop":',
    '{"followupPrompt":',
    '{"contextUsagePercentage":',
    '{"__type":',
    '{"error":',
)
_MAX_MARKER = max(len(m) for m in EVENT_MARKERS)


def _match_object(text: str, start: int) -> Optional[int]:
    """从 start 处的 { 开始做括号配对，返回对象结束后的位置；不完整返回 None"""
    depth = 0
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return idx + 1
    return None


class KiroEventParser:
    """从二进制事件流中提取 JSON 事件"""

    def __init__(self):
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="ignore")

    def _next_marker(self, pos: int) -> int:
        found = [self.buffer.find(m, pos) for m in EVENT_MARKERS]
        found = [f for f in found if f >= 0]
        return min(found) if found else -1

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        self.buffer += self._decoder.decode(chunk)
        events: List[Dict[str, Any]] = []
        pos = 0
        while True:
            start = self._next_marker(pos)
            if start < 0:
                # 保留可能被截断的标记前缀
                pos = max(pos, len(self.buffer) - _MAX_MARKER)
                break
            end = _match_object(self.buffer, start)
            if end is None:
                pos = start
                break
            try:
                event = json.loads(self.buffer[start:end])
            except json.JSONDecodeError:
                log.debug(f"Skipping undecodable kiro frame: {self.buffer[start:end][:80]}", tag="KIRO")
                pos = start + 1
                continue
            if isinstance(event, dict):
                events.append(event)
            pos = end
        self.buffer = self.buffer[pos:]
        return events


class KiroClient(ProviderClient):
    protocol = Protocol.KIRO

    def region(self, credential: CredentialRecord) -> str:
        return credential.secret.get("region") or self.config.extra.get("region") or DEFAULT_REGION

    def base_url(self, credential: CredentialRecord) -> str:
        if credential.secret.get("base_url") or self.config.base_url:
            return super().base_url(credential)
        return f"https://codewhisperer.{self.region(credential)}.amazonaws.com"

    def headers(self, credential: CredentialRecord) -> Dict[str, str]:
        token = credential.secret.get("accessToken") or credential.secret.get("access_token") or ""
        return {
            "content-type": "application/json",
            "accept": "application/json",
            "authorization": f"Bearer {token}",
            "amz-sdk-invocation-id": credential.uuid,
            "x-amz-user-agent": "aws-sdk-js/1.0.7 KiroIDE",
        }

    def build_payload(self, native_request: Dict[str, Any], credential: CredentialRecord) -> Dict[str, Any]:
        body, _ = self.split_routing_fields(native_request)
        profile_arn = credential.secret.get("profileArn")
        if profile_arn:
            body["profileArn"] = profile_arn
        return body

    async def _stream(self, payload: Dict[str, Any], credential: CredentialRecord) -> AsyncIterator[Dict[str, Any]]:
        url = f"{self.base_url(credential)}/generateAssistantResponse"
        parser = KiroEventParser()
        async with self.transport.stream(
            "POST", url, headers=self.headers(credential), json_body=payload,
            timeout=self.config.stream_timeout, profile=self.config.profile,
        ) as resp:
            await self.check_stream(resp, credential)
            async for chunk in resp.aiter_bytes():
                for event in parser.feed(chunk):
                    yield event

    async def send(self, native_request: Dict[str, Any], credential: CredentialRecord,
                   stream: bool = False) -> NativeResult:
        payload = self.build_payload(native_request, credential)
        if stream:
            return self._stream(payload, credential)
        events = [event async for event in self._stream(payload, credential)]
        return {"model": native_request.get("model", ""), "events": events}

    async def sync_usage(self, credential: CredentialRecord) -> Dict[str, Any]:
        """刷新 accessToken（social 与 IdC 两种认证方式）"""
        secret = credential.secret
        refresh_token = secret.get("refreshToken") or secret.get("refresh_token")
        if not refresh_token:
            raise AuthError("Kiro credential has no refreshToken",
                            provider_type=self.provider_type, credential_uuid=credential.uuid)
        region = self.region(credential)

        if secret.get("authMethod") == "IdC":
            url = f"https://oidc.{region}.amazonaws.com/token"
            body = {
                "clientId": secret.get("clientId"),
                "clientSecret": secret.get("clientSecret"),
                "refreshToken": refresh_token,
                "grantType": "refresh_token",
            }
        else:
            url = f"https://prod.{region}.auth.desktop.kiro.dev/refreshToken"
            body = {"refreshToken": refresh_token}

        data = await self.post_json(url, {"content-type": "application/json"}, body, credential)
        access_token = data.get("accessToken")
        if not access_token:
            raise AuthError("Kiro refresh returned no accessToken",
                            provider_type=self.provider_type, credential_uuid=credential.uuid)
        secret["accessToken"] = access_token
        if data.get("refreshToken"):
            secret["refreshToken"] = data["refreshToken"]
        if data.get("profileArn"):
            secret["profileArn"] = data["profileArn"]
        expires_in = int(data.get("expiresIn") or 3600)
        secret["expiresAt"] = time.time() + expires_in
        log.debug(f"Refreshed kiro token for {credential.display_name}", tag="PROVIDER")
        return {"expires_in": expires_in}
