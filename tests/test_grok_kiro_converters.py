"""
Grok / Kiro 转换器与注册中心测试
"""

import json

import pytest

from relay2api.converters.grok import GrokConverter, resolve_grok_model, split_tool_calls
from relay2api.converters.kiro import KiroConverter, encode_reasoning_text, resolve_kiro_model
from relay2api.converters.registry import ConverterRegistry, protocol_for_provider
from relay2api.errors import ConfigurationError, ConversionError, ProtocolError, TransportError
from relay2api.models import (
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    ChunkKind,
    ImagePart,
    NativeEnvelope,
    Protocol,
    ReasoningConfig,
    Role,
    ToolCall,
    ToolDefinition,
)


@pytest.fixture
def grok():
    return GrokConverter()


@pytest.fixture
def kiro():
    return KiroConverter()


def _feed(converter, state, events):
    chunks = []
    for event in events:
        chunks += converter.next_canonical_chunks(event, state)
    return chunks


def _joined(chunks, kind):
    return "".join(c.text for c in chunks if c.kind is kind)


def _tool_history():
    return [
        CanonicalMessage.from_text(Role.USER, "hi"),
        CanonicalMessage(Role.ASSISTANT, tool_calls=[ToolCall("call_1", "lookup", "{\"q\":1}")]),
        CanonicalMessage.from_text(Role.TOOL, "res"),
        CanonicalMessage.from_text(Role.USER, "go"),
    ]


class TestGrokRequest:
    """消息扁平化"""

    def test_flatten_with_tool_trace(self, grok):
        messages = _tool_history()
        messages[2].tool_call_id = "call_1"
        request = CanonicalRequest(model="grok-4", system="sys", messages=messages)
        assert grok.flatten_messages(request) == (
            "system: sys\n\n"
            "user: hi\n\n"
            "assistant: [tool_call] lookup {\"q\":1}\n\n"
            "tool[lookup]#call_1: res\n\n"
            "go"
        )

    def test_tool_prompt_prepended(self, grok):
        request = CanonicalRequest(
            model="grok-3",
            messages=[CanonicalMessage.from_text(Role.USER, "q")],
            tools=[ToolDefinition("lookup", "find things")],
            tool_choice="required",
        )
        message = grok.flatten_messages(request)
        assert message.startswith("You can call the following tools.")
        assert "You must call at least one tool." in message
        assert message.endswith("\n\nq")

    def test_attachment_only_message(self, grok):
        request = CanonicalRequest(model="grok-3", messages=[
            CanonicalMessage(Role.USER, [ImagePart(url="https://example.com/a.png")]),
        ])
        assert grok.flatten_messages(request) == "Refer to the following content:"

    def test_model_mapping(self, grok):
        body = grok.from_canonical_request(CanonicalRequest(
            model="grok-4-heavy", messages=[CanonicalMessage.from_text(Role.USER, "x")],
        ))
        assert body["modelName"] == "grok-4"
        assert body["modelMode"] == "MODEL_MODE_HEAVY"
        assert body["model"] == "grok-4-heavy"
        assert body["message"] == "x"

    def test_unknown_model_defaults(self):
        assert resolve_grok_model("grok-99") == ("grok-3", "MODEL_MODE_GROK_3")

    def test_to_canonical_requires_message(self, grok):
        with pytest.raises(ConversionError):
            grok.to_canonical_request({"modelName": "grok-3"})
        request = grok.to_canonical_request({"message": "hello", "modelName": "grok-4"})
        assert request.model == "grok-4"
        assert request.messages[0].text == "hello"


class TestGrokResponse:
    def test_split_tool_calls(self):
        text, calls = split_tool_calls("ok\n[tool_call] lookup {\"q\":2}\n[tool_call] broken {nope")
        assert text == "ok\n[tool_call] broken {nope"
        assert [(c.name, c.arguments) for c in calls] == [("lookup", "{\"q\":2}")]

    def test_to_canonical(self, grok):
        response = grok.to_canonical_response({
            "model": "grok-3",
            "message": "ok\n[tool_call] lookup {\"q\":2}",
            "thinking": "reason",
            "responseId": "r1",
        })
        assert response.text == "ok"
        assert response.reasoning == "reason"
        assert response.finish_reason == "tool_calls"
        assert response.id == "r1"

    def test_model_response_preferred(self, grok):
        response = grok.to_canonical_response({"result": {"response": {
            "message": "stale", "modelResponse": {"message": "final"},
        }}})
        assert response.text == "final"

    def test_missing_message(self, grok):
        with pytest.raises(ConversionError):
            grok.to_canonical_response({"thinking": "only"})

    def test_from_canonical(self, grok):
        body = grok.from_canonical_response(CanonicalResponse(
            model="grok-3", id="r2", text="a", tool_calls=[ToolCall("c", "f", "{}")],
        ))
        assert body["message"] == "a\n[tool_call] f {}"
        assert body["modelResponse"] == {"message": body["message"], "responseId": "r2"}


class TestGrokStream:
    def test_tokens_then_done(self, grok):
        state = grok.new_stream_state()
        chunks = _feed(grok, state, [
            {"result": {"response": {"token": "th", "isThinking": True}}},
            {"result": {"response": {"token": "hi"}}},
            {"result": {"response": {"modelResponse": {"message": "hi"}}}},
            {"result": {"response": {"isDone": True}}},
            {"result": {"response": {"token": "late"}}},
        ])
        assert [c.kind for c in chunks] == [ChunkKind.REASONING, ChunkKind.TEXT, ChunkKind.TERMINAL]
        assert grok.finish_stream(state) == []

    def test_model_response_only(self, grok):
        state = grok.new_stream_state()
        chunks = _feed(grok, state, [{"result": {"response": {"modelResponse": {"message": "whole"}}}}])
        chunks += grok.finish_stream(state)
        assert _joined(chunks, ChunkKind.TEXT) == "whole"
        assert chunks[-1].kind is ChunkKind.TERMINAL

    def test_error_and_malformed(self, grok):
        state = grok.new_stream_state()
        assert grok.next_canonical_chunks({"result": {"response": "oops"}}, state) == []
        chunks = grok.next_canonical_chunks({"error": {"message": "rate limited"}}, state)
        assert chunks[0].kind is ChunkKind.ERROR
        assert isinstance(chunks[0].error, ProtocolError)

    def test_client_frames(self, grok):
        state = grok.new_stream_state()
        text = grok.from_canonical_chunk(CanonicalChunk.text_delta("a"), state)
        assert text[0]["result"]["response"]["token"] == "a"
        assert grok.from_canonical_chunk(CanonicalChunk.tool_call(0, "c", "f", "{}"), state) == []
        final = grok.from_canonical_chunk(CanonicalChunk.terminal("tool_calls"), state)
        assert final[0]["result"]["response"]["token"] == "\n[tool_call] f {}"
        assert final[-1]["result"]["response"]["isDone"] is True
        assert grok.encode_stream_event(final[-1]).endswith("}\n")

    def test_client_error(self, grok):
        state = grok.new_stream_state()
        events = grok.from_canonical_chunk(CanonicalChunk.failure(TransportError("gone")), state)
        assert events == [{"error": {"message": "gone"}}]


class TestKiroRequest:
    def test_conversation_state(self, kiro):
        messages = _tool_history()[:3]
        messages[2].tool_call_id = "call_1"
        request = CanonicalRequest(
            model="claude-sonnet-4-5",
            system="sys",
            messages=messages,
            tools=[ToolDefinition("lookup", "")],
            reasoning=ReasoningConfig.enabled(4000),
        )
        body = kiro.from_canonical_request(request)
        state = body["conversationState"]
        first_user = state["history"][0]["userInputMessage"]
        assert first_user["content"] == (
            "<thinking_mode>enabled</thinking_mode><max_thinking_length>4000</max_thinking_length>\n\nsys\n\nhi"
        )
        assert first_user["modelId"] == "CLAUDE_SONNET_4_5_20250929_V1_0"
        assistant = state["history"][1]["assistantResponseMessage"]
        assert assistant["toolUses"] == [{"toolUseId": "call_1", "name": "lookup", "input": {"q": 1}}]

        current = state["currentMessage"]["userInputMessage"]
        assert current["content"] == "Tool results provided."
        context = current["userInputMessageContext"]
        assert context["toolResults"][0]["toolUseId"] == "call_1"
        assert context["tools"][0]["toolSpecification"]["description"] == "lookup"
        assert body["model"] == "claude-sonnet-4-5"
        assert body["stream"] is False

    def test_adaptive_reasoning_budget(self, kiro):
        body = kiro.from_canonical_request(CanonicalRequest(
            model="x", messages=[CanonicalMessage.from_text(Role.USER, "q")],
            reasoning=ReasoningConfig.adaptive("low"),
        ))
        content = body["conversationState"]["currentMessage"]["userInputMessage"]["content"]
        assert content.startswith("<thinking_mode>enabled</thinking_mode><max_thinking_length>2048<")
        assert "history" not in body["conversationState"]

    def test_trailing_assistant_gets_continue(self, kiro):
        body = kiro.from_canonical_request(CanonicalRequest(model="x", messages=[
            CanonicalMessage.from_text(Role.USER, "q"),
            CanonicalMessage.from_text(Role.ASSISTANT, "a"),
        ]))
        assert body["conversationState"]["currentMessage"]["userInputMessage"]["content"] == "Continue"

    def test_unknown_model_defaults(self):
        assert resolve_kiro_model("claude-unknown") == "CLAUDE_SONNET_4_5_20250929_V1_0"

    def test_roundtrip_to_canonical(self, kiro):
        messages = _tool_history()
        messages[2].tool_call_id = "call_1"
        body = kiro.from_canonical_request(CanonicalRequest(model="claude-sonnet-4-5", messages=messages, stream=True))
        request = kiro.to_canonical_request(body)
        assert [m.role for m in request.messages] == [Role.USER, Role.ASSISTANT, Role.TOOL, Role.USER]
        assert request.messages[1].tool_calls[0].name == "lookup"
        assert request.messages[2].tool_call_id == "call_1"
        assert request.stream is True

    def test_missing_conversation_state(self, kiro):
        with pytest.raises(ConversionError):
            kiro.to_canonical_request({"model": "x"})


class TestKiroResponse:
    def test_events_to_canonical(self, kiro):
        response = kiro.to_canonical_response({"model": "claude", "events": [
            {"content": "<thinking>plan</thinking>\n\nhi"},
            {"name": "lookup", "toolUseId": "t1", "input": "{\"a\""},
            {"toolUseId": "t1", "input": ":1}"},
            {"toolUseId": "t1", "stop": True},
            {"contextUsagePercentage": 12},
        ]})
        assert response.reasoning == "plan"
        assert response.text == "hi"
        assert response.tool_calls == [ToolCall("t1", "lookup", "{\"a\":1}")]
        assert response.finish_reason == "tool_calls"

    def test_requires_events(self, kiro):
        with pytest.raises(ConversionError):
            kiro.to_canonical_response({"content": "x"})

    def test_encode_reasoning_text(self):
        assert encode_reasoning_text(None, "t") == "t"
        assert encode_reasoning_text("r", "") == "<thinking>r</thinking>"
        assert encode_reasoning_text("r", "t") == "<thinking>r</thinking>\n\nt"

    def test_from_canonical_response(self, kiro):
        body = kiro.from_canonical_response(CanonicalResponse(
            model="m", id="i", text="t", reasoning="r", tool_calls=[ToolCall("t1", "f", "{}")],
        ))
        assert body["events"][0] == {"content": "<thinking>r</thinking>\n\nt"}
        assert body["events"][-1] == {"name": "f", "toolUseId": "t1", "stop": True}


class TestKiroStream:
    def test_thinking_split_across_frames(self, kiro):
        state = kiro.new_stream_state()
        chunks = _feed(kiro, state, [
            {"content": "<thin"},
            {"content": "king>pl"},
            {"content": "an</thinking>\n"},
            {"content": "\nhel"},
            {"content": "lo"},
            {"name": "lookup", "toolUseId": "t1", "input": "{\"a\""},
            {"toolUseId": "t1", "input": ":1}"},
            {"toolUseId": "t1", "stop": True},
        ])
        chunks += kiro.finish_stream(state)

        assert _joined(chunks, ChunkKind.REASONING) == "plan"
        assert _joined(chunks, ChunkKind.TEXT) == "hello"
        tool_chunks = [c for c in chunks if c.kind is ChunkKind.TOOL_CALL]
        assert tool_chunks[0].tool_call_id == "t1"
        assert "".join(c.arguments_delta for c in tool_chunks) == "{\"a\":1}"
        assert chunks[-1].kind is ChunkKind.TERMINAL
        assert chunks[-1].finish_reason == "tool_calls"
        assert kiro.finish_stream(state) == []

    def test_orphan_tool_fragment_skipped(self, kiro):
        state = kiro.new_stream_state()
        assert kiro.next_canonical_chunks({"input": "{}"}, state) == []
        assert state.is_open

    def test_error_frame(self, kiro):
        state = kiro.new_stream_state()
        chunks = kiro.next_canonical_chunks({"__type": "ThrottlingException", "message": "slow"}, state)
        assert chunks[0].kind is ChunkKind.ERROR
        assert "slow" in chunks[0].error.message

    def test_client_frames(self, kiro):
        state = kiro.new_stream_state()
        events = []
        for chunk in (
            CanonicalChunk.reasoning_delta("r1"),
            CanonicalChunk.reasoning_delta("r2"),
            CanonicalChunk.text_delta("t"),
            CanonicalChunk.tool_call(0, "t1", "f", "{}"),
            CanonicalChunk.terminal("tool_calls"),
        ):
            events += kiro.from_canonical_chunk(chunk, state)
        assert events == [
            {"content": "<thinking>r1"},
            {"content": "r2"},
            {"content": "</thinking>\n\nt"},
            {"toolUseId": "t1", "input": "{}", "name": "f"},
            {"toolUseId": "t1", "stop": True},
        ]
        assert json.loads(kiro.encode_stream_event(events[0])) == events[0]

    def test_client_error(self, kiro):
        state = kiro.new_stream_state()
        assert kiro.from_canonical_chunk(CanonicalChunk.failure(TransportError("x")), state) == [{"error": "x"}]


class TestRegistry:
    @pytest.mark.parametrize("provider_type,protocol", [
        ("openai-custom", Protocol.OPENAI),
        ("openaiResponses-custom", Protocol.OPENAI_RESPONSES),
        ("claude-kiro-oauth", Protocol.KIRO),
        ("claude-custom", Protocol.CLAUDE),
        ("gemini-antigravity", Protocol.GEMINI),
        ("grok-custom", Protocol.GROK),
        ("openai-azure", Protocol.OPENAI),
        ("kiro-builder", Protocol.KIRO),
    ])
    def test_protocol_for_provider(self, provider_type, protocol):
        assert protocol_for_provider(provider_type) is protocol

    def test_unknown_provider_raises(self):
        with pytest.raises(ConfigurationError):
            protocol_for_provider("mistral-custom")

    def test_shared_instance(self):
        assert ConverterRegistry.get_instance() is ConverterRegistry.get_instance()

    def test_all_protocols_registered(self):
        registry = ConverterRegistry()
        assert set(registry.protocols) == set(Protocol)
        assert registry.for_provider("claude-kiro-oauth").protocol is Protocol.KIRO

    def test_empty_registry_raises(self):
        with pytest.raises(ConversionError):
            ConverterRegistry(register_defaults=False).get(Protocol.OPENAI)

    def test_convert_request_openai_to_claude(self):
        body = ConverterRegistry().convert_request(
            {"model": "m", "messages": [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}]},
            "openai", "claude",
        )
        assert body["system"] == "s"
        assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "u"}]}]

    def test_convert_response_claude_to_openai(self):
        body = ConverterRegistry().convert_response(
            {"content": [{"type": "text", "text": "hello"}], "stop_reason": "end_turn"},
            Protocol.CLAUDE, Protocol.OPENAI,
        )
        assert body["choices"][0]["message"]["content"] == "hello"
        assert body["choices"][0]["finish_reason"] == "stop"

    def test_envelope_dispatch(self):
        registry = ConverterRegistry()
        request = registry.to_canonical_request(NativeEnvelope(Protocol.GROK, {"message": "hey"}))
        assert request.messages[0].text == "hey"
