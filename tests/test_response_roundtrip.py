"""
响应往返测试

canonical → 原生 → canonical 后，推理 / 文本 / 工具调用三部分的划分保持不变。
"""

import pytest

from relay2api.converters.registry import ConverterRegistry
from relay2api.models import CanonicalResponse, Protocol, ToolCall

REASONING_SAMPLES = [
    "plan the call",
    "press ` to open console",
    "about `</thinking>` tag",
    "two paragraphs\n\nsecond ` stray",
]


def _round_trip(protocol, response):
    converter = ConverterRegistry.get_instance().get(protocol)
    return converter.to_canonical_response(converter.from_canonical_response(response))


class TestResponseRoundTrip:
    """每种协议的非流式响应往返"""

    @pytest.mark.parametrize("protocol", list(Protocol))
    @pytest.mark.parametrize("reasoning", REASONING_SAMPLES)
    def test_reasoning_and_text(self, protocol, reasoning):
        result = _round_trip(protocol, CanonicalResponse(model="m", text="hello", reasoning=reasoning))
        assert result.reasoning == reasoning
        assert result.text == "hello"
        assert result.tool_calls == []

    @pytest.mark.parametrize("protocol", list(Protocol))
    def test_tool_calls(self, protocol):
        original = CanonicalResponse(
            model="m",
            text="checking",
            reasoning="need weather",
            tool_calls=[ToolCall("call_1", "get_weather", "{\"city\":\"Oslo\"}")],
            finish_reason="tool_calls",
        )
        result = _round_trip(protocol, original)
        assert result.reasoning == "need weather"
        assert result.text == "checking"
        assert [(tc.name, tc.arguments) for tc in result.tool_calls] == [("get_weather", "{\"city\":\"Oslo\"}")]
        assert result.finish_reason == "tool_calls"

    @pytest.mark.parametrize("protocol", [Protocol.OPENAI, Protocol.OPENAI_RESPONSES, Protocol.CLAUDE, Protocol.KIRO])
    def test_tool_call_ids_kept(self, protocol):
        original = CanonicalResponse(model="m", tool_calls=[ToolCall("call_1", "f", "{}")], finish_reason="tool_calls")
        assert [tc.id for tc in _round_trip(protocol, original).tool_calls] == ["call_1"]
