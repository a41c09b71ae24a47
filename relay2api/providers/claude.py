"""
Claude Messages API 客户端 (claude-custom)
"""

from typing import Any, Dict

from ..models import Protocol
from ..pool.credential import CredentialRecord
from .base import NativeResult, ProviderClient

__all__ = ["ClaudeClient"]

ANTHROPIC_VERSION = "2023-06-01"


class ClaudeClient(ProviderClient):
    protocol = Protocol.CLAUDE
    default_base_url = "https://api.anthropic.com"
    routing_fields = ()

    def headers(self, credential: CredentialRecord) -> Dict[str, str]:
        secret = credential.secret
        headers = {
            "content-type": "application/json",
            "anthropic-version": secret.get("anthropic_version", ANTHROPIC_VERSION),
        }
        api_key = secret.get("api_key") or secret.get("CLAUDE_API_KEY")
        if api_key:
            headers["x-api-key"] = api_key
        elif secret.get("access_token"):
            headers["authorization"] = f"Bearer {secret['access_token']}"
        return headers

    async def send(self, native_request: Dict[str, Any], credential: CredentialRecord,
                   stream: bool = False) -> NativeResult:
        body = dict(native_request)
        body["stream"] = stream
        url = f"{self.base_url(credential)}/v1/messages"
        if stream:
            return self.stream_sse(url, self.headers(credential), body, credential)
        return await self.post_json(url, self.headers(credential), body, credential)

    async def sync_usage(self, credential: CredentialRecord) -> Dict[str, Any]:
        """以模型列表作为凭证健康检查"""
        resp = await self.transport.request(
            "GET", f"{self.base_url(credential)}/v1/models",
            headers=self.headers(credential), timeout=self.config.timeout,
        )
        self.check_response(resp, credential)
        data = self.decode_json(resp)
        return {"models": len(data.get("data") or [])}
