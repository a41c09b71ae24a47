"""
降级路由器测试

使用内存中的假提供商客户端，覆盖凭证切换、降级链、超时与流式错误语义。
"""

import asyncio
import time

import pytest

from relay2api.capture import EventObserver
from relay2api.config_loader import ModelRoutingRule
from relay2api.errors import (
    AuthError,
    ConfigurationError,
    ConversionError,
    PoolExhaustedError,
    ProtocolError,
    TransportError,
)
from relay2api.models import CanonicalMessage, CanonicalRequest, ChunkKind, Role
from relay2api.pool import CredentialRecord, CredentialStatus, FallbackRouter, PoolManager, PoolSettings
from relay2api.sse import DONE

OPENAI_OK = {
    "model": "gpt-4o",
    "choices": [{"message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 1, "completion_tokens": 1},
}
CLAUDE_OK = {"content": [{"type": "text", "text": "from claude"}], "stop_reason": "end_turn"}


def _text_chunk(text):
    return {"choices": [{"delta": {"content": text}}]}


async def _aiter(items):
    for item in items:
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, (int, float)) and not isinstance(item, bool):
            await asyncio.sleep(item)
            continue
        yield item


class FakeClient:
    """
    按调用顺序返回预设结果

    非流式结果: dict（响应体）/ Exception（抛出）/ float（先 sleep 再返回下一项）
    流式结果: native 块列表，其中的 Exception 会在迭代到该位置时抛出
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def send(self, native_request, credential, stream=False):
        self.calls.append((credential.uuid, native_request))
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, tuple) and outcome[0] == "sleep":
            await asyncio.sleep(outcome[1])
            outcome = outcome[2]
        if isinstance(outcome, Exception):
            raise outcome
        if stream:
            return _aiter(outcome)
        return outcome

    async def sync_usage(self, credential):
        return {}


class RecordingObserver(EventObserver):
    def __init__(self):
        self.events = []

    def notify(self, event, payload):
        self.events.append((event, payload))


def _manager(pools, observer=None, **settings):
    manager = PoolManager(PoolSettings(**settings), observer)
    for provider_type, count in pools.items():
        manager.register_provider(provider_type)
        for i in range(count):
            manager.add_credential(CredentialRecord(
                provider_type=provider_type, custom_name=f"{provider_type}-{i}", last_sync_at=time.time(),
            ))
    return manager


def _request(model="gpt-4o", stream=False):
    return CanonicalRequest(model=model, messages=[CanonicalMessage.from_text(Role.USER, "hi")], stream=stream)


def _records(manager, provider_type):
    return manager.get_pool(provider_type).records


async def _collect(agen):
    return [chunk async for chunk in agen]


class TestResolve:
    """提供商选择"""

    def test_explicit_provider_wins(self):
        router = FallbackRouter(_manager({}), {}, default_provider="openai-custom",
                                routing_rules=[ModelRoutingRule("gpt-*", "claude-custom")])
        assert router.resolve("gpt-4o", "grok-custom").provider_type == "grok-custom"

    def test_unknown_explicit_provider(self):
        router = FallbackRouter(_manager({}), {}, default_provider="openai-custom")
        with pytest.raises(ConfigurationError) as exc:
            router.resolve("gpt-4o", "nope")
        assert exc.value.http_status == 400

    def test_routing_rule_rewrites_model(self):
        router = FallbackRouter(_manager({}), {}, routing_rules=[
            ModelRoutingRule("claude-*", "claude-kiro-oauth"),
            ModelRoutingRule("fast", "openai-custom", model="gpt-4o-mini"),
        ])
        decision = router.resolve("fast")
        assert (decision.provider_type, decision.model) == ("openai-custom", "gpt-4o-mini")
        assert router.resolve("claude-sonnet-4-5").provider_type == "claude-kiro-oauth"

    def test_default_provider(self):
        router = FallbackRouter(_manager({}), {}, default_provider="openai-custom")
        assert router.resolve("anything").provider_type == "openai-custom"

    def test_unroutable_model(self):
        with pytest.raises(ConfigurationError) as exc:
            FallbackRouter(_manager({}), {}).resolve("mystery")
        assert exc.value.http_status == 400

    def test_provider_chain_dedupes(self):
        router = FallbackRouter(_manager({}), {}, fallback_chain={
            "claude-kiro-oauth": ["claude-custom", "claude-kiro-oauth", "claude-custom", "openai-custom"],
        })
        assert router.provider_chain("claude-kiro-oauth") == ["claude-kiro-oauth", "claude-custom", "openai-custom"]
        assert router.provider_chain("grok-custom") == ["grok-custom"]


class TestDispatch:
    """非流式分派"""

    @pytest.mark.asyncio
    async def test_success_releases_and_resets(self):
        manager = _manager({"openai-custom": 1})
        record = _records(manager, "openai-custom")[0]
        record.error_count = 2
        client = FakeClient(OPENAI_OK)
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        result = await router.dispatch(_request())

        assert result.response.text == "ok"
        assert result.provider_type == "openai-custom"
        assert result.credential_uuid == record.uuid
        assert record.in_flight == 0
        assert record.error_count == 0
        assert client.calls[0][1]["messages"] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_failover_to_next_credential(self):
        manager = _manager({"openai-custom": 3})
        client = FakeClient(TransportError("reset"), TransportError("reset", status_code=503), OPENAI_OK)
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        result = await router.dispatch(_request())

        used = [uuid for uuid, _ in client.calls]
        assert len(set(used)) == 3
        assert result.credential_uuid == used[-1]
        errors = {r.uuid: r.error_count for r in _records(manager, "openai-custom")}
        assert errors[used[0]] == errors[used[1]] == 1
        assert errors[used[2]] == 0

    @pytest.mark.asyncio
    async def test_attempts_capped_by_switch_limit(self):
        manager = _manager({"openai-custom": 5}, credential_switch_max_retries=2)
        client = FakeClient(TransportError("down", status_code=502))
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        with pytest.raises(PoolExhaustedError) as exc:
            await router.dispatch(_request())

        assert len(client.calls) == 2
        assert isinstance(exc.value.last_error, TransportError)
        assert exc.value.status_code == 502
        assert exc.value.fallback_attempted is False
        assert exc.value.attempted_providers == ["openai-custom"]

    @pytest.mark.asyncio
    async def test_attempts_capped_by_pool_size(self):
        manager = _manager({"openai-custom": 2}, credential_switch_max_retries=5)
        client = FakeClient(TransportError("down"))
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        with pytest.raises(PoolExhaustedError):
            await router.dispatch(_request())
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_auth_error_disables_and_switches(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient(AuthError("bad key", status_code=401), OPENAI_OK)
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        await router.dispatch(_request())

        first = manager.get_credential("openai-custom", client.calls[0][0])
        assert first.status is CredentialStatus.DISABLED
        assert first.in_flight == 0

    @pytest.mark.asyncio
    async def test_protocol_error_not_retried(self):
        manager = _manager({"openai-custom": 3})
        client = FakeClient(ProtocolError("bad request", status_code=400))
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        with pytest.raises(ProtocolError) as exc:
            await router.dispatch(_request())

        assert len(client.calls) == 1
        assert exc.value.provider_type == "openai-custom"
        assert all(r.error_count == 0 and r.in_flight == 0 for r in _records(manager, "openai-custom"))

    @pytest.mark.asyncio
    async def test_malformed_response_not_retried(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient({"choices": []})
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        with pytest.raises(ConversionError):
            await router.dispatch(_request())
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transport_failure(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient(("sleep", 1.0, OPENAI_OK), OPENAI_OK)
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom",
                                request_timeout=0.05)

        result = await router.dispatch(_request())

        slow = manager.get_credential("openai-custom", client.calls[0][0])
        assert slow.error_count == 1
        assert "timed out" in slow.last_error_message
        assert result.credential_uuid == client.calls[1][0]

    @pytest.mark.asyncio
    async def test_fallback_chain(self):
        observer = RecordingObserver()
        manager = _manager({"claude-kiro-oauth": 2, "claude-custom": 1}, observer)
        kiro = FakeClient(TransportError("kiro down"))
        claude = FakeClient(CLAUDE_OK)
        router = FallbackRouter(
            manager,
            {"claude-kiro-oauth": kiro, "claude-custom": claude},
            fallback_chain={"claude-kiro-oauth": ["claude-custom"]},
            routing_rules=[ModelRoutingRule("claude-*", "claude-kiro-oauth")],
            default_models={"claude-custom": "claude-sonnet-4-20250514"},
        )

        result = await router.dispatch(_request("claude-sonnet-4-5"))

        assert len(kiro.calls) == 2
        assert result.provider_type == "claude-custom"
        assert result.response.text == "from claude"
        assert result.attempted_providers == ["claude-kiro-oauth", "claude-custom"]
        assert claude.calls[0][1]["model"] == "claude-sonnet-4-20250514"
        assert ("fallback", {"from": "claude-kiro-oauth", "to": "claude-custom", "model": "claude-sonnet-4-5"}) \
            in observer.events

    @pytest.mark.asyncio
    async def test_fallback_exhausted(self):
        observer = RecordingObserver()
        manager = _manager({"claude-kiro-oauth": 1, "claude-custom": 1}, observer)
        router = FallbackRouter(
            manager,
            {"claude-kiro-oauth": FakeClient(TransportError("a")), "claude-custom": FakeClient(AuthError("b"))},
            fallback_chain={"claude-kiro-oauth": ["claude-custom"]},
            default_provider="claude-kiro-oauth",
        )

        with pytest.raises(PoolExhaustedError) as exc:
            await router.dispatch(_request("claude-x"))

        assert exc.value.fallback_attempted is True
        assert exc.value.attempted_providers == ["claude-kiro-oauth", "claude-custom"]
        assert isinstance(exc.value.last_error, AuthError)
        assert observer.events[-1][0] == "pool_exhausted"

    @pytest.mark.asyncio
    async def test_provider_without_client_skipped(self):
        manager = _manager({"claude-kiro-oauth": 1, "openai-custom": 1})
        router = FallbackRouter(
            manager,
            {"openai-custom": FakeClient(OPENAI_OK)},
            fallback_chain={"claude-kiro-oauth": ["openai-custom"]},
            default_provider="claude-kiro-oauth",
        )
        result = await router.dispatch(_request())
        assert result.provider_type == "openai-custom"

    @pytest.mark.asyncio
    async def test_empty_pool(self):
        manager = _manager({"openai-custom": 0})
        router = FallbackRouter(manager, {"openai-custom": FakeClient(OPENAI_OK)}, default_provider="openai-custom")
        with pytest.raises(PoolExhaustedError) as exc:
            await router.dispatch(_request())
        assert exc.value.last_error is None
        assert exc.value.http_status == 503

    @pytest.mark.asyncio
    async def test_clients_lookup_function(self):
        manager = _manager({"openai-custom": 1})
        client = FakeClient(OPENAI_OK)
        router = FallbackRouter(manager, lambda ptype: client if ptype == "openai-custom" else None,
                                default_provider="openai-custom")
        assert (await router.dispatch(_request())).response.text == "ok"


class TestDispatchStream:
    """流式分派"""

    @pytest.mark.asyncio
    async def test_stream_success(self):
        manager = _manager({"openai-custom": 1})
        record = _records(manager, "openai-custom")[0]
        client = FakeClient([_text_chunk("Hel"), _text_chunk("lo"), dict(DONE)])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        chunks = await _collect(router.dispatch_stream(_request(stream=True)))

        assert [c.kind for c in chunks] == [ChunkKind.TEXT, ChunkKind.TEXT, ChunkKind.TERMINAL]
        assert "".join(c.text for c in chunks) == "Hello"
        assert record.in_flight == 0
        assert record.error_count == 0

    @pytest.mark.asyncio
    async def test_stream_without_done_gets_terminal(self):
        manager = _manager({"openai-custom": 1})
        client = FakeClient([_text_chunk("x")])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        chunks = await _collect(router.dispatch_stream(_request(stream=True)))

        assert [c.kind for c in chunks] == [ChunkKind.TEXT, ChunkKind.TERMINAL]

    @pytest.mark.asyncio
    async def test_failure_before_first_chunk_switches(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient([TransportError("reset before data")], [_text_chunk("ok"), dict(DONE)])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        chunks = await _collect(router.dispatch_stream(_request(stream=True)))

        assert chunks[0].text == "ok"
        assert len(client.calls) == 2
        assert manager.get_credential("openai-custom", client.calls[0][0]).error_count == 1

    @pytest.mark.asyncio
    async def test_upstream_error_event_before_first_chunk_switches(self):
        manager = _manager({"claude-custom": 2})
        overloaded = {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}
        client = FakeClient([overloaded], [
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "ok"}},
            {"type": "message_stop"},
        ])
        router = FallbackRouter(manager, {"claude-custom": client}, default_provider="claude-custom")

        chunks = await _collect(router.dispatch_stream(_request("claude-x", stream=True)))

        assert [c.kind for c in chunks] == [ChunkKind.TEXT, ChunkKind.TERMINAL]
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_mid_stream_error_becomes_error_chunk(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient([_text_chunk("partial"), TransportError("connection reset")])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        chunks = await _collect(router.dispatch_stream(_request(stream=True)))

        assert [c.kind for c in chunks] == [ChunkKind.TEXT, ChunkKind.ERROR]
        assert isinstance(chunks[-1].error, TransportError)
        assert len(client.calls) == 1
        record = manager.get_credential("openai-custom", client.calls[0][0])
        assert record.error_count == 1
        assert record.in_flight == 0

    @pytest.mark.asyncio
    async def test_upstream_error_chunk_keeps_error_count(self):
        """流内的上游错误块既不算成功也不计入失败"""
        manager = _manager({"openai-custom": 1}, max_error_count=5)
        record = _records(manager, "openai-custom")[0]
        record.error_count = 2
        client = FakeClient([_text_chunk("partial"), {"error": {"message": "content filtered"}}, dict(DONE)])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        chunks = await _collect(router.dispatch_stream(_request(stream=True)))

        assert [c.kind for c in chunks] == [ChunkKind.TEXT, ChunkKind.ERROR]
        assert isinstance(chunks[-1].error, ProtocolError)
        assert len(client.calls) == 1
        assert record.error_count == 2
        assert record.status is CredentialStatus.ACTIVE
        assert record.in_flight == 0

    @pytest.mark.asyncio
    async def test_protocol_error_before_first_chunk_raises(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient(ProtocolError("bad request", status_code=400))
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        with pytest.raises(ProtocolError):
            await _collect(router.dispatch_stream(_request(stream=True)))
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out(self):
        manager = _manager({"openai-custom": 2})
        client = FakeClient([1.0, _text_chunk("never")], [_text_chunk("fast"), dict(DONE)])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom",
                                stream_timeout=0.05)

        chunks = await _collect(router.dispatch_stream(_request(stream=True)))

        assert chunks[0].text == "fast"
        stalled = manager.get_credential("openai-custom", client.calls[0][0])
        assert stalled.error_count == 1
        assert stalled.in_flight == 0

    @pytest.mark.asyncio
    async def test_caller_cancellation_not_penalised(self):
        manager = _manager({"openai-custom": 1})
        record = _records(manager, "openai-custom")[0]
        client = FakeClient([_text_chunk("a"), _text_chunk("b"), _text_chunk("c"), dict(DONE)])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        stream = router.dispatch_stream(_request(stream=True))
        first = await stream.__anext__()
        await stream.aclose()

        assert first.text == "a"
        assert record.in_flight == 0
        assert record.error_count == 0

    @pytest.mark.asyncio
    async def test_stream_exhausted(self):
        manager = _manager({"openai-custom": 1})
        client = FakeClient([TransportError("down")])
        router = FallbackRouter(manager, {"openai-custom": client}, default_provider="openai-custom")

        with pytest.raises(PoolExhaustedError):
            await _collect(router.dispatch_stream(_request(stream=True)))
