"""
Grok 网页会话客户端 (grok-custom)

凭证 secret 字段：
- token / sso / GROK_COOKIE_TOKEN: SSO cookie（可带 "sso=" 前缀）
- cf_clearance / GROK_CF_CLEARANCE: 可选的 Cloudflare cookie
- user_agent / GROK_USER_AGENT: 浏览器 UA，sec-ch-ua 系列头由它推导

上游只有流式接口（NDJSON）。非流式请求在这里把流聚合成
{"message", "thinking", "responseId", "modelResponse"}。
"""

import base64
import random
import re
import string
import uuid
from typing import Any, AsyncIterator, Dict

from log import log

from ..errors import AuthError, ProtocolError
from ..models import Protocol
from ..pool.credential import CredentialRecord
from ..sse import is_done
from ..transport import StreamResponse
from .base import NativeResult, ProviderClient

__all__ = ["GrokClient", "build_grok_headers", "gen_statsig_id"]

DEFAULT_BASE_URL = "https://grok.com"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/136.0.0.0 Safari/537.36"
)
USAGE_MODEL = "grok-4-1-thinking-1129"
# 查询总量固定为 80
QUERY_TOTAL_LIMIT = 80

DEVICE_ENV_INFO = {
    "darkModeEnabled": False,
    "devicePixelRatio": 2,
    "screenWidth": 2056,
    "screenHeight": 1329,
    "viewportWidth": 2056,
    "viewportHeight": 1083,
}


def gen_statsig_id() -> str:
    """生成 x-statsig-id（伪造的前端错误信息的 base64）"""
    if random.random() < 0.5:
        rand = "".join(random.choices(string.ascii_lowercase + string.digits, k=5))
        msg = f"e:TypeError: Cannot read properties of null (reading 'children['{rand}']')"
    else:
        rand = "".join(random.choices(string.ascii_lowercase, k=10))
        msg = f"e:TypeError: Cannot read properties of undefined (reading '{rand}')"
    return base64.b64encode(msg.encode("utf-8")).decode("ascii")


def _platform(ua: str) -> str:
    if "Windows" in ua:
        return "Windows"
    if "Android" in ua:
        return "Android"
    if "iPhone" in ua or "iPad" in ua:
        return "iOS"
    if "Linux" in ua:
        return "Linux"
    return "macOS"


def build_grok_headers(secret: Dict[str, Any], base_url: str = DEFAULT_BASE_URL) -> Dict[str, str]:
    """按凭证构造浏览器风格请求头"""
    token = str(secret.get("token") or secret.get("sso") or secret.get("GROK_COOKIE_TOKEN") or "")
    if token.startswith("sso="):
        token = token[4:]
    cookies = [f"sso={token}", f"sso-rw={token}"] if token else []
    cf_clearance = secret.get("cf_clearance") or secret.get("GROK_CF_CLEARANCE")
    if cf_clearance:
        cookies.append(f"cf_clearance={cf_clearance}")

    ua = secret.get("user_agent") or secret.get("GROK_USER_AGENT") or DEFAULT_USER_AGENT
    brand = "Microsoft Edge" if "Edg/" in ua else "Google Chrome"
    match = re.search(r"(?:Chrome|Chromium|Edg)/(\d+)", ua)
    version = match.group(1) if match else "136"
    platform = _platform(ua)
    mobile = "mobile" in ua.lower()

    return {
        "accept": "*/*",
        "accept-language": "zh-CN,zh;q=0.9",
        "cache-control": "no-cache",
        "content-type": "application/json",
        "cookie": "; ".join(cookies),
        "origin": base_url,
        "pragma": "no-cache",
        "priority": "u=1, i",
        "referer": f"{base_url}/",
        "sec-ch-ua": f'"{brand}";v="{version}", "Chromium";v="{version}", "Not(A:Brand";v="24"',
        "sec-ch-ua-arch": "arm" if platform == "macOS" else "x86",
        "sec-ch-ua-bitness": "64",
        "sec-ch-ua-mobile": "?1" if mobile else "?0",
        "sec-ch-ua-model": "",
        "sec-ch-ua-platform": f'"{platform}"',
        "sec-fetch-dest": "empty",
        "sec-fetch-mode": "cors",
        "sec-fetch-site": "same-origin",
        "user-agent": ua,
        "x-statsig-id": gen_statsig_id(),
        "x-xai-request-id": str(uuid.uuid4()),
    }


class GrokClient(ProviderClient):
    protocol = Protocol.GROK
    default_base_url = DEFAULT_BASE_URL

    def headers(self, credential: CredentialRecord) -> Dict[str, str]:
        return build_grok_headers(credential.secret, self.base_url(credential))

    def build_payload(self, native_request: Dict[str, Any]) -> Dict[str, Any]:
        body, _ = self.split_routing_fields(native_request)
        body.setdefault("deviceEnvInfo", dict(DEVICE_ENV_INFO))
        body.setdefault("disableSelfHarmShortCircuit", False)
        body.setdefault("disableTextFollowUps", False)
        body.setdefault("enableImageStreaming", True)
        body.setdefault("enableSideBySide", True)
        body.setdefault("forceConcise", False)
        body.setdefault("forceSideBySide", False)
        body.setdefault("imageGenerationCount", 2)
        body.setdefault("isAsyncChat", False)
        body.setdefault("returnRawGrokInXaiRequest", False)
        return body

    async def _stream(self, payload: Dict[str, Any], credential: CredentialRecord) -> AsyncIterator[Dict[str, Any]]:
        url = f"{self.base_url(credential)}/rest/app-chat/conversations/new"
        last_response_id = ""
        async for event in self.stream_sse(url, self.headers(credential), payload, credential, ndjson=True):
            if is_done(event):
                break
            response = (event.get("result") or {}).get("response")
            if isinstance(response, dict) and response.get("responseId"):
                last_response_id = response["responseId"]
            yield event
        # 通知转换器收尾
        yield {"result": {"response": {"isDone": True, "responseId": last_response_id}}}

    async def _collect(self, payload: Dict[str, Any], credential: CredentialRecord) -> Dict[str, Any]:
        collected: Dict[str, Any] = {"message": "", "thinking": "", "responseId": "", "modelResponse": None}
        async for event in self._stream(payload, credential):
            if "error" in event:
                error = event["error"]
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ProtocolError(f"Grok stream error: {message}", provider_type=self.provider_type)
            response = (event.get("result") or {}).get("response")
            if not isinstance(response, dict):
                continue
            token = response.get("token")
            if isinstance(token, str) and token:
                if response.get("isThinking"):
                    collected["thinking"] += token
                else:
                    collected["message"] += token
            if response.get("responseId"):
                collected["responseId"] = response["responseId"]
            if isinstance(response.get("modelResponse"), dict):
                collected["modelResponse"] = response["modelResponse"]
        if collected["modelResponse"] is None:
            collected.pop("modelResponse")
        return collected

    async def send(self, native_request: Dict[str, Any], credential: CredentialRecord,
                   stream: bool = False) -> NativeResult:
        payload = self.build_payload(native_request)
        if stream:
            return self._stream(payload, credential)
        return await self._collect(payload, credential)

    async def sync_usage(self, credential: CredentialRecord) -> Dict[str, Any]:
        """POST /rest/rate-limits 同步剩余额度"""
        data = await self.post_json(
            f"{self.base_url(credential)}/rest/rate-limits",
            self.headers(credential),
            {"requestKind": "DEFAULT", "modelName": USAGE_MODEL},
            credential,
        )
        remaining = data.get("remainingTokens")
        if remaining is None:
            remaining = data.get("remainingQueries", data.get("totalQueries"))
        if "remainingQueries" in data or "totalQueries" in data:
            queries = data.get("remainingQueries", data.get("totalQueries")) or 0
            data["totalLimit"] = QUERY_TOTAL_LIMIT
            data["usedQueries"] = max(0, QUERY_TOTAL_LIMIT - queries)
        log.info(f"Grok usage synced for {credential.display_name}: remaining={remaining}", tag="PROVIDER")
        return {"remaining": remaining, **data}

    async def check_stream(self, resp: StreamResponse, credential: CredentialRecord) -> None:
        await super().check_stream(resp, credential)
        if "text/html" in resp.headers.get("content-type", ""):
            raise AuthError(
                "Grok returned HTML instead of a stream, SSO token may be invalid",
                provider_type=self.provider_type, credential_uuid=credential.uuid,
            )
