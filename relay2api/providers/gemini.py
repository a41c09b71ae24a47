"""
Gemini 客户端 (gemini-cli-oauth / gemini-antigravity)

两种上游形态：
- 凭证带 project_id：Code Assist 内部接口 v1internal，请求体包装为
  {"model", "project", "request": {...}}，响应包装为 {"response": {...}}
- 否则：公开的 generativelanguage v1beta 接口，api key 或 OAuth bearer

sync_usage 使用 refresh_token 换取新的 access_token（写回凭证 secret）。
"""

import time
from urllib.parse import urlencode
from typing import Any, Dict

from log import log

from ..errors import AuthError
from ..models import Protocol
from ..pool.credential import CredentialRecord
from .base import NativeResult, ProviderClient

__all__ = ["GeminiClient"]

CODE_ASSIST_ENDPOINT = "https://cloudcode-pa.googleapis.com"
PUBLIC_ENDPOINT = "https://generativelanguage.googleapis.com"
TOKEN_URI = "https://oauth2.googleapis.com/token"


class GeminiClient(ProviderClient):
    protocol = Protocol.GEMINI
    default_base_url = PUBLIC_ENDPOINT

    def is_code_assist(self, credential: CredentialRecord) -> bool:
        return bool(credential.secret.get("project_id"))

    def base_url(self, credential: CredentialRecord) -> str:
        if self.is_code_assist(credential) and not (credential.secret.get("base_url") or self.config.base_url):
            return CODE_ASSIST_ENDPOINT
        return super().base_url(credential)

    def headers(self, credential: CredentialRecord) -> Dict[str, str]:
        secret = credential.secret
        headers = {"content-type": "application/json"}
        if secret.get("access_token") or secret.get("token"):
            headers["authorization"] = f"Bearer {secret.get('access_token') or secret.get('token')}"
        elif secret.get("api_key"):
            headers["x-goog-api-key"] = secret["api_key"]
        return headers

    async def send(self, native_request: Dict[str, Any], credential: CredentialRecord,
                   stream: bool = False) -> NativeResult:
        body, routing = self.split_routing_fields(native_request)
        model = routing.get("model") or "gemini-2.5-pro"
        base = self.base_url(credential)
        action = "streamGenerateContent" if stream else "generateContent"

        if self.is_code_assist(credential):
            url = f"{base}/v1internal:{action}"
            payload: Dict[str, Any] = {
                "model": model,
                "project": credential.secret["project_id"],
                "request": body,
            }
        else:
            url = f"{base}/v1beta/models/{model}:{action}"
            payload = body
        if stream:
            url += "?alt=sse"
            return self.stream_sse(url, self.headers(credential), payload, credential)
        return await self.post_json(url, self.headers(credential), payload, credential)

    async def sync_usage(self, credential: CredentialRecord) -> Dict[str, Any]:
        """刷新 OAuth token；只有 api key 的凭证直接视为同步成功"""
        secret = credential.secret
        refresh_token = secret.get("refresh_token")
        if not refresh_token:
            return {}
        if not secret.get("client_id"):
            raise AuthError("Gemini credential has refresh_token but no client_id",
                            provider_type=self.provider_type, credential_uuid=credential.uuid)

        form = urlencode({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": secret["client_id"],
            "client_secret": secret.get("client_secret", ""),
        })
        resp = await self.transport.request(
            "POST", secret.get("token_uri", TOKEN_URI),
            headers={"content-type": "application/x-www-form-urlencoded"},
            data=form.encode("utf-8"),
            timeout=self.config.timeout,
        )
        self.check_response(resp, credential)
        data = self.decode_json(resp)
        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("Token refresh returned no access_token",
                            provider_type=self.provider_type, credential_uuid=credential.uuid)
        secret["access_token"] = access_token
        expires_in = int(data.get("expires_in") or 3600)
        secret["expiry"] = time.time() + expires_in
        log.debug(f"Refreshed gemini token for {credential.display_name}", tag="PROVIDER")
        return {"expires_in": expires_in}
