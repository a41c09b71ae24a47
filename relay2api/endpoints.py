"""
HTTP 端点

客户端协议由端点决定：
- POST /v1/chat/completions                         → openai
- POST /v1/responses                                → openai_responses
- POST /v1/messages                                 → claude
- POST /v1beta/models/{model}:generateContent       → gemini
- POST /v1beta/models/{model}:streamGenerateContent → gemini (流式)

请求头 model-provider 可显式指定提供商类型，否则按模型路由规则 / 默认提供商。
"""

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse, StreamingResponse

from log import log, set_request_id

from .capture import DiagnosticCapture
from .converters.base import ProtocolConverter
from .converters.registry import ConverterRegistry, protocol_for_provider
from .errors import ConversionError, RelayError
from .models import CanonicalChunk, CanonicalRequest, ConversionContext, Protocol
from .pool.manager import PoolManager
from .pool.router import FallbackRouter
from .pool.scheduler import RefreshScheduler
from .transport import Transport

__all__ = ["router", "GatewayState", "get_gateway"]

PROVIDER_HEADER = "model-provider"

router = APIRouter()


@dataclass
class GatewayState:
    """挂在 app.state.gateway 上的运行时对象"""

    registry: ConverterRegistry
    manager: PoolManager
    router: FallbackRouter
    api_password: str = ""
    scheduler: Optional[RefreshScheduler] = None
    capture: Optional[DiagnosticCapture] = None
    transport: Optional[Transport] = None


def get_gateway(request: Request) -> GatewayState:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gateway not initialized")
    return gateway


async def authenticate(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
    x_goog_api_key: Optional[str] = Header(None),
) -> str:
    """
    API 密码认证

    接受 Authorization: Bearer、x-api-key (claude)、x-goog-api-key 或 ?key= (gemini)。
    未配置 api_password 时不做认证。
    """
    password = get_gateway(request).api_password
    if not password:
        return ""

    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:]
    token = token or x_api_key or x_goog_api_key or request.query_params.get("key")

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if token != password:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API password")
    return token


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {e}")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _error_response(converter: ProtocolConverter, error: RelayError) -> JSONResponse:
    status_code, payload = converter.to_client_error(error)
    return JSONResponse(status_code=status_code, content=payload)


async def _encode_stream(
    gateway: GatewayState,
    converter: ProtocolConverter,
    ctx: ConversionContext,
    first: CanonicalChunk,
    upstream: AsyncIterator[CanonicalChunk],
) -> AsyncIterator[str]:
    """canonical 块 → 客户端协议的流式事件文本"""
    capture = gateway.capture
    client_state = converter.new_stream_state(ctx)

    def render(chunk: CanonicalChunk):
        events = converter.from_canonical_chunk(chunk, client_state)
        if capture is not None and events:
            capture.capture_chunk(ctx, converted=events)
        return [converter.encode_stream_event(event) for event in events]

    finished = False
    try:
        for text in render(first):
            yield text
        try:
            async for chunk in upstream:
                for text in render(chunk):
                    yield text
        except RelayError as e:
            log.error(f"Stream {ctx.request_id} failed after first chunk: {e.message}", tag="GATEWAY")
            for text in render(CanonicalChunk.failure(e)):
                yield text
        marker = converter.stream_done_marker()
        if marker:
            yield marker
        if capture is not None:
            capture.finish_stream(ctx)
        finished = True
    finally:
        # 客户端中途断开时丢弃未完成的采集记录
        if capture is not None and not finished:
            capture.discard(ctx)
        await upstream.aclose()


async def _relay(
    request: Request,
    protocol: Protocol,
    body: Dict[str, Any],
    gateway: GatewayState,
) -> Any:
    converter = gateway.registry.get(protocol)
    try:
        canonical: CanonicalRequest = converter.to_canonical_request(body)
    except ConversionError as e:
        e.status_code = e.status_code or 400
        return _error_response(converter, e)

    provider_header = request.headers.get(PROVIDER_HEADER)
    try:
        decision = gateway.router.resolve(canonical.model, provider_header)
        target = protocol_for_provider(decision.provider_type)
    except RelayError as e:
        return _error_response(converter, e)

    ctx = ConversionContext(source=protocol, target=target, model=canonical.model, stream=canonical.stream)
    set_request_id(ctx.request_id)
    if gateway.capture is not None:
        gateway.capture.capture_request(ctx, before=body)
    log.info(
        f"{protocol.value} request {ctx.request_id} model={canonical.model} stream={canonical.stream} "
        f"-> {decision.provider_type}",
        tag="GATEWAY",
    )

    if not canonical.stream:
        try:
            result = await gateway.router.dispatch(canonical, provider_header, ctx)
        except RelayError as e:
            log.error(f"Request {ctx.request_id} failed: {e!r}", tag="GATEWAY")
            if gateway.capture is not None:
                gateway.capture.discard(ctx)
            return _error_response(converter, e)
        payload = converter.from_canonical_response(result.response)
        if gateway.capture is not None:
            gateway.capture.capture_response(ctx, converted=payload)
        return JSONResponse(content=payload, headers={"x-relay-provider": result.provider_type})

    upstream = gateway.router.dispatch_stream(canonical, provider_header, ctx)
    # 第一个块之前的失败仍可以返回普通的错误响应
    try:
        first = await upstream.__anext__()
    except StopAsyncIteration:
        first = CanonicalChunk.terminal()
    except RelayError as e:
        log.error(f"Stream {ctx.request_id} failed before first chunk: {e!r}", tag="GATEWAY")
        if gateway.capture is not None:
            gateway.capture.discard(ctx)
        return _error_response(converter, e)

    return StreamingResponse(
        _encode_stream(gateway, converter, ctx, first, upstream),
        media_type="application/x-ndjson" if protocol in (Protocol.GROK, Protocol.KIRO) else "text/event-stream",
        headers={"cache-control": "no-cache", "x-accel-buffering": "no"},
    )


# ====================== 对话端点 ======================

@router.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    """OpenAI Chat Completions"""
    body = await _read_json(request)
    return await _relay(request, Protocol.OPENAI, body, gateway)


@router.post("/v1/responses")
async def responses(
    request: Request,
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    body = await _read_json(request)
    return await _relay(request, Protocol.OPENAI_RESPONSES, body, gateway)


@router.post("/v1/messages")
async def messages(
    request: Request,
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    """Anthropic Messages"""
    body = await _read_json(request)
    return await _relay(request, Protocol.CLAUDE, body, gateway)


@router.post("/v1beta/models/{model}:generateContent")
async def generate_content(
    model: str,
    request: Request,
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    body = await _read_json(request)
    body["model"] = model
    body["stream"] = False
    return await _relay(request, Protocol.GEMINI, body, gateway)


@router.post("/v1beta/models/{model}:streamGenerateContent")
async def stream_generate_content(
    model: str,
    request: Request,
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    body = await _read_json(request)
    body["model"] = model
    body["stream"] = True
    return await _relay(request, Protocol.GEMINI, body, gateway)


# ====================== 状态端点 ======================

@router.get("/v1/models")
async def list_models(
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    """列出路由规则中的精确模型名与各提供商的降级模型"""
    models = []
    seen = set()
    for rule in gateway.router.routing_rules:
        if rule.is_prefix or not rule.enabled or rule.pattern in seen:
            continue
        seen.add(rule.pattern)
        models.append({"id": rule.pattern, "object": "model", "owned_by": rule.provider})
    for provider_type, model in gateway.router.default_models.items():
        if model not in seen:
            seen.add(model)
            models.append({"id": model, "object": "model", "owned_by": provider_type})
    return {"object": "list", "data": models}


@router.get("/health")
async def health(gateway: GatewayState = Depends(get_gateway)):
    pools = gateway.manager.status()
    return {
        "status": "ok",
        "providers": {ptype: info.get("eligible", 0) for ptype, info in pools.items()},
    }


@router.get("/pool/status")
async def pool_status(
    token: str = Depends(authenticate),
    gateway: GatewayState = Depends(get_gateway),
):
    return {
        "pools": gateway.manager.status(),
        "router": gateway.router.status(),
        "scheduler": gateway.scheduler.status() if gateway.scheduler else None,
    }
