"""
HTTP 端点测试

用 FastAPI TestClient 驱动完整网关（转换器 + 凭证池 + 降级路由器），
上游替换为内存中的假客户端。
"""

import json
import time

import pytest
from fastapi.testclient import TestClient

from relay2api.config_loader import ModelRoutingRule
from relay2api.converters.registry import ConverterRegistry
from relay2api.capture import DiagnosticCapture
from relay2api.endpoints import GatewayState, _encode_stream
from relay2api.errors import TransportError
from relay2api.models import CanonicalChunk, ConversionContext, Protocol
from relay2api.pool import CredentialRecord, FallbackRouter, PoolManager
from relay2api.sse import DONE
from web import create_app

OPENAI_OK = {
    "id": "chatcmpl-1",
    "model": "gpt-4o",
    "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 3, "completion_tokens": 1},
}
CHAT_BODY = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}


async def _aiter(items):
    for item in items:
        if isinstance(item, Exception):
            raise item
        yield item


class FakeClient:
    def __init__(self, unary=None, stream=None):
        self.unary = unary if unary is not None else OPENAI_OK
        self.stream = stream if stream is not None else [
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
            dict(DONE),
        ]
        self.requests = []

    async def send(self, native_request, credential, stream=False):
        self.requests.append(native_request)
        if stream:
            if isinstance(self.stream, Exception):
                raise self.stream
            return _aiter(self.stream)
        if isinstance(self.unary, Exception):
            raise self.unary
        return self.unary

    async def sync_usage(self, credential):
        return {}


def _gateway(client=None, password="", extra_clients=None):
    manager = PoolManager()
    clients = {"openai-custom": client or FakeClient()}
    clients.update(extra_clients or {})
    for provider_type in clients:
        manager.register_provider(provider_type)
        manager.add_credential(CredentialRecord(provider_type=provider_type, last_sync_at=time.time()))
    registry = ConverterRegistry.get_instance()
    router = FallbackRouter(
        manager,
        clients,
        registry=registry,
        routing_rules=[ModelRoutingRule("gpt-4o", "openai-custom"), ModelRoutingRule("claude-*", "openai-custom")],
        default_provider="openai-custom",
        default_models={"claude-custom": "claude-sonnet-4-20250514"},
    )
    return GatewayState(registry=registry, manager=manager, router=router, api_password=password)


@pytest.fixture
def make_client():
    opened = []

    def _make(**kwargs):
        test_client = TestClient(create_app(_gateway(**kwargs)))
        test_client.__enter__()
        opened.append(test_client)
        return test_client

    yield _make
    for test_client in opened:
        test_client.__exit__(None, None, None)


def _sse_payloads(text):
    return [line[len("data: "):] for line in text.split("\n") if line.startswith("data: ")]


class TestAuth:
    """API 密码认证"""

    def test_no_password_means_open(self, make_client):
        client = make_client()
        assert client.post("/v1/chat/completions", json=CHAT_BODY).status_code == 200

    def test_missing_token(self, make_client):
        client = make_client(password="pw")
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)
        assert resp.status_code == 401

    def test_wrong_token(self, make_client):
        client = make_client(password="pw")
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers={"authorization": "Bearer nope"})
        assert resp.status_code == 403

    @pytest.mark.parametrize("headers,params", [
        ({"authorization": "Bearer pw"}, None),
        ({"x-api-key": "pw"}, None),
        ({"x-goog-api-key": "pw"}, None),
        ({}, {"key": "pw"}),
    ])
    def test_accepted_forms(self, make_client, headers, params):
        client = make_client(password="pw")
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers=headers, params=params)
        assert resp.status_code == 200

    def test_health_is_public(self, make_client):
        client = make_client(password="pw")
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "providers": {"openai-custom": 1}}


class TestUnary:
    """非流式请求"""

    def test_chat_completion(self, make_client):
        upstream = FakeClient()
        client = make_client(client=upstream)

        resp = client.post("/v1/chat/completions", json=CHAT_BODY)

        assert resp.status_code == 200
        assert resp.headers["x-relay-provider"] == "openai-custom"
        body = resp.json()
        assert body["choices"][0]["message"]["content"] == "ok"
        assert body["choices"][0]["finish_reason"] == "stop"
        assert upstream.requests[0]["messages"] == [{"role": "user", "content": "hi"}]

    def test_claude_client_gets_claude_shape(self, make_client):
        client = make_client()
        resp = client.post("/v1/messages", json={
            "model": "claude-sonnet-4-5", "max_tokens": 100, "messages": [{"role": "user", "content": "hi"}],
        })
        body = resp.json()
        assert body["type"] == "message"
        assert body["content"][0] == {"type": "text", "text": "ok"}
        assert body["stop_reason"] == "end_turn"

    def test_gemini_route(self, make_client):
        upstream = FakeClient()
        client = make_client(client=upstream)
        resp = client.post(
            "/v1beta/models/gpt-4o:generateContent",
            json={"contents": [{"role": "user", "parts": [{"text": "hi"}]}]},
        )
        assert resp.status_code == 200
        assert resp.json()["candidates"][0]["content"]["parts"][0]["text"] == "ok"
        assert upstream.requests[0]["model"] == "gpt-4o"

    def test_invalid_json(self, make_client):
        client = make_client()
        resp = client.post("/v1/chat/completions", content=b"{not json",
                           headers={"content-type": "application/json"})
        assert resp.status_code == 400

    def test_non_object_body(self, make_client):
        client = make_client()
        assert client.post("/v1/chat/completions", json=[1, 2]).status_code == 400

    def test_missing_messages(self, make_client):
        client = make_client()
        resp = client.post("/v1/chat/completions", json={"model": "gpt-4o"})
        assert resp.status_code == 400
        assert "messages" in resp.json()["error"]["message"]

    def test_pool_exhausted(self, make_client):
        client = make_client(client=FakeClient(unary=TransportError("upstream down")))
        resp = client.post("/v1/chat/completions", json=CHAT_BODY)
        assert resp.status_code == 503
        assert resp.json()["error"]["type"] == "pool_exhausted"

    def test_explicit_provider_header(self, make_client):
        other = FakeClient(unary={"content": [{"type": "text", "text": "from claude"}], "stop_reason": "end_turn"})
        client = make_client(extra_clients={"claude-custom": other})
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers={"model-provider": "claude-custom"})
        assert resp.json()["choices"][0]["message"]["content"] == "from claude"
        assert resp.headers["x-relay-provider"] == "claude-custom"
        assert other.requests[0]["model"] == "gpt-4o"

    def test_unknown_provider_header(self, make_client):
        """无法识别的 model-provider 头返回 400"""
        fake = FakeClient()
        client = make_client(client=fake)
        resp = client.post("/v1/chat/completions", json=CHAT_BODY, headers={"model-provider": "nope"})
        assert resp.status_code == 400
        assert "nope" in resp.json()["error"]["message"]
        assert fake.requests == []


class TestStreaming:
    """流式请求"""

    def test_openai_stream(self, make_client):
        client = make_client()
        resp = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        payloads = _sse_payloads(resp.text)
        assert payloads[-1] == "[DONE]"
        chunks = [json.loads(p) for p in payloads[:-1]]
        text = "".join(c["choices"][0]["delta"].get("content") or "" for c in chunks if c["choices"])
        assert text == "Hello"
        assert chunks[0]["choices"][0]["delta"]["role"] == "assistant"

    def test_claude_stream_events(self, make_client):
        client = make_client()
        resp = client.post("/v1/messages", json={
            "model": "claude-sonnet-4-5", "max_tokens": 100, "stream": True,
            "messages": [{"role": "user", "content": "hi"}],
        })
        events = [line[len("event: "):] for line in resp.text.split("\n") if line.startswith("event: ")]
        assert events[0] == "message_start"
        assert events[-1] == "message_stop"
        assert "content_block_delta" in events

    def test_failure_before_first_chunk_is_http_error(self, make_client):
        client = make_client(client=FakeClient(stream=[TransportError("reset")]))
        resp = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True})
        assert resp.status_code == 503

    def test_failure_mid_stream_is_error_event(self, make_client):
        client = make_client(client=FakeClient(stream=[
            {"choices": [{"delta": {"content": "partial"}}]},
            TransportError("connection reset"),
        ]))
        resp = client.post("/v1/chat/completions", json={**CHAT_BODY, "stream": True})

        assert resp.status_code == 200
        payloads = _sse_payloads(resp.text)
        assert payloads[-1] == "[DONE]"
        error_frames = [json.loads(p) for p in payloads[:-1] if "error" in json.loads(p)]
        assert len(error_frames) == 1
        assert "connection reset" in error_frames[0]["error"]["message"]


class TestStatusEndpoints:
    def test_models(self, make_client):
        client = make_client()
        ids = [m["id"] for m in client.get("/v1/models").json()["data"]]
        assert ids == ["gpt-4o", "claude-sonnet-4-20250514"]

    def test_pool_status(self, make_client):
        client = make_client()
        client.post("/v1/chat/completions", json=CHAT_BODY)
        body = client.get("/pool/status").json()
        credential = body["pools"]["openai-custom"]["credentials"][0]
        assert credential["usage_count"] == 1
        assert credential["in_flight"] == 0
        assert body["router"]["default_provider"] == "openai-custom"
        assert body["scheduler"] is None

    def test_keepalive(self, make_client):
        assert make_client().head("/keepalive").status_code == 200


class TestStreamCapture:
    """流式采集记录的生命周期"""

    def _stream(self, capture):
        gateway = _gateway()
        gateway.capture = capture
        converter = gateway.registry.get(Protocol.OPENAI)
        ctx = ConversionContext(source=Protocol.OPENAI, target=Protocol.OPENAI, model="gpt-4o", stream=True)
        capture.capture_request(ctx, before=CHAT_BODY)
        upstream = _aiter([CanonicalChunk.text_delta("lo"), CanonicalChunk.terminal()])
        return _encode_stream(gateway, converter, ctx, CanonicalChunk.text_delta("Hel"), upstream)

    @pytest.mark.asyncio
    async def test_client_disconnect_drops_pending_record(self):
        """客户端中途断开后不留下未完成的记录"""
        capture = DiagnosticCapture(flush_delay=0)
        stream = self._stream(capture)
        await stream.__anext__()
        assert capture.pending_count == 1

        await stream.aclose()

        assert capture.pending_count == 0
        assert capture.completed == []

    @pytest.mark.asyncio
    async def test_completed_stream_is_flushed(self):
        capture = DiagnosticCapture(flush_delay=0)
        frames = [text async for text in self._stream(capture)]
        await capture.drain()

        assert frames[-1].strip() == "data: [DONE]"
        assert capture.pending_count == 0
        assert len(capture.completed) == 1
