"""
OpenAI 兼容客户端

- OpenAIClient:          /v1/chat/completions (openai-custom / openai-qwen-oauth)
- OpenAIResponsesClient: /v1/responses        (openaiResponses-custom)
"""

from typing import Any, Dict

from ..models import Protocol
from ..pool.credential import CredentialRecord
from .base import NativeResult, ProviderClient

__all__ = ["OpenAIClient", "OpenAIResponsesClient"]


class OpenAIClient(ProviderClient):
    protocol = Protocol.OPENAI
    default_base_url = "https://api.openai.com"
    routing_fields = ()
    path = "/v1/chat/completions"

    def base_url(self, credential: CredentialRecord) -> str:
        # qwen OAuth 凭证自带 resource_url
        resource_url = credential.secret.get("resource_url")
        if resource_url and not credential.secret.get("base_url"):
            url = resource_url if "://" in resource_url else f"https://{resource_url}"
            return url.rstrip("/")
        return super().base_url(credential)

    def headers(self, credential: CredentialRecord) -> Dict[str, str]:
        secret = credential.secret
        token = secret.get("api_key") or secret.get("OPENAI_API_KEY") or secret.get("access_token") or ""
        return {
            "content-type": "application/json",
            "authorization": f"Bearer {token}",
        }

    def prepare(self, native_request: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        body = dict(native_request)
        body["stream"] = stream
        if not stream:
            body.pop("stream_options", None)
        return body

    async def send(self, native_request: Dict[str, Any], credential: CredentialRecord,
                   stream: bool = False) -> NativeResult:
        body = self.prepare(native_request, stream)
        url = f"{self.base_url(credential)}{self.path}"
        if stream:
            return self.stream_sse(url, self.headers(credential), body, credential)
        return await self.post_json(url, self.headers(credential), body, credential)

    async def sync_usage(self, credential: CredentialRecord) -> Dict[str, Any]:
        resp = await self.transport.request(
            "GET", f"{self.base_url(credential)}/v1/models",
            headers=self.headers(credential), timeout=self.config.timeout,
        )
        self.check_response(resp, credential)
        data = self.decode_json(resp)
        return {"models": len(data.get("data") or [])}


class OpenAIResponsesClient(OpenAIClient):
    protocol = Protocol.OPENAI_RESPONSES
    path = "/v1/responses"

    def prepare(self, native_request: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        body = dict(native_request)
        body["stream"] = stream
        return body
