"""
Claude (Anthropic Messages) 转换器

- 请求: system、content blocks (text/image/document/thinking/tool_use/tool_result)、
  thinking 配置、tools/tool_choice
- 响应: content blocks，thinking 块 → canonical reasoning
- 流式: message_start / content_block_start|delta|stop / message_delta / message_stop
"""

from typing import Any, Dict, List, Optional

from ..errors import AuthError, ConversionError, ProtocolError, TransportError
from ..models import (
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    ChunkKind,
    FilePart,
    ImagePart,
    Protocol,
    ReasoningBlock,
    Role,
    StreamState,
    TextPart,
    ToolCall,
    ToolDefinition,
    Usage,
    ensure_json_text,
    new_id,
)
from ..reasoning import reasoning_from_claude, reasoning_to_claude
from ..sse import sse_event
from .base import ProtocolConverter, build_data_uri, parse_data_uri, require

__all__ = ["ClaudeConverter", "STOP_REASONS"]

STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "pause_turn": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "refusal": "content_filter",
}
_FINISH_TO_STOP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "content_filter": "refusal",
    "error": "end_turn",
}

DEFAULT_MAX_TOKENS = 4096

# 流内 error 事件的分类
_STREAM_ERROR_TYPES = {
    "authentication_error": AuthError,
    "permission_error": AuthError,
    "overloaded_error": TransportError,
    "rate_limit_error": TransportError,
    "api_error": TransportError,
}


def _block_text(content: Any) -> str:
    """tool_result 等字段的内容：字符串或 text 块数组"""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text")
    return ""


def _image_part(block: Dict[str, Any]) -> ImagePart:
    source = block.get("source") or {}
    if source.get("type") == "base64":
        return ImagePart(url=build_data_uri(source.get("media_type"), source.get("data", "")),
                         media_type=source.get("media_type"))
    return ImagePart(url=source.get("url", ""), media_type=source.get("media_type"))


def _image_block(part: ImagePart) -> Dict[str, Any]:
    media_type, data = parse_data_uri(part.url)
    if data is not None:
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}
    return {"type": "image", "source": {"type": "url", "url": part.url}}


def _reasoning_block(block: Dict[str, Any]) -> Optional[ReasoningBlock]:
    block_type = block.get("type")
    if block_type == "thinking":
        return ReasoningBlock(text=block.get("thinking", ""), signature=block.get("signature") or None)
    if block_type == "redacted_thinking":
        return ReasoningBlock(redacted=block.get("data", ""))
    return None


def _reasoning_to_native(block: ReasoningBlock) -> Dict[str, Any]:
    if block.is_redacted:
        return {"type": "redacted_thinking", "data": block.redacted}
    native = {"type": "thinking", "thinking": block.text}
    if block.signature:
        native["signature"] = block.signature
    return native


class _ClientBlocks:
    """输出端 content block 记账（同一时刻最多一个打开的 block）"""

    def __init__(self):
        self.current_type: Optional[str] = None
        self.current_index = -1
        self.current_tool: Optional[int] = None

    def close_block_if_open(self) -> List[Dict[str, Any]]:
        if self.current_type is None:
            return []
        event = {"type": "content_block_stop", "index": self.current_index}
        self.current_type = None
        self.current_tool = None
        return [event]

    def open_block(self, block: Dict[str, Any]) -> List[Dict[str, Any]]:
        events = self.close_block_if_open()
        self.current_index += 1
        self.current_type = block["type"]
        events.append({"type": "content_block_start", "index": self.current_index, "content_block": block})
        return events


class ClaudeConverter(ProtocolConverter):
    protocol = Protocol.CLAUDE

    # ====================== 请求 ======================

    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        raw_messages = require(native, "messages", self.protocol, status_code=400)
        if not isinstance(raw_messages, list):
            raise ConversionError("claude 'messages' must be a list", status_code=400)

        system = native.get("system")
        if isinstance(system, list):
            system = "\n\n".join(b.get("text", "") for b in system if isinstance(b, dict) and b.get("type") == "text")

        messages: List[CanonicalMessage] = []
        for raw in raw_messages:
            role = raw.get("role")
            if role not in ("user", "assistant"):
                raise ConversionError(f"claude message has unsupported role {role!r}", status_code=400)
            content = raw.get("content")
            if isinstance(content, str):
                messages.append(CanonicalMessage.from_text(Role(role), content))
                continue

            parts: List[Any] = []
            tool_calls: List[ToolCall] = []
            tool_results: List[CanonicalMessage] = []
            reasoning_blocks: List[ReasoningBlock] = []
            for block in content or []:
                block_type = block.get("type")
                if block_type == "text":
                    parts.append(TextPart(block.get("text", "")))
                elif block_type == "image":
                    parts.append(_image_part(block))
                elif block_type == "document":
                    source = block.get("source") or {}
                    parts.append(FilePart(data=source.get("data"), url=source.get("url"),
                                          filename=block.get("title"), media_type=source.get("media_type")))
                elif block_type in ("thinking", "redacted_thinking"):
                    reasoning_blocks.append(_reasoning_block(block))
                elif block_type == "tool_use":
                    tool_calls.append(ToolCall(
                        id=block.get("id") or new_id("toolu_"),
                        name=block.get("name", ""),
                        arguments=ensure_json_text(block.get("input")),
                    ))
                elif block_type == "tool_result":
                    tool_results.append(CanonicalMessage(
                        Role.TOOL,
                        [TextPart(_block_text(block.get("content")))],
                        tool_call_id=block.get("tool_use_id"),
                    ))

            messages.extend(tool_results)
            if parts or tool_calls or reasoning_blocks or not tool_results:
                messages.append(CanonicalMessage(
                    Role(role), parts, tool_calls=tool_calls,
                    reasoning="".join(b.text for b in reasoning_blocks) or None,
                    reasoning_blocks=reasoning_blocks,
                ))

        tools = [
            ToolDefinition(
                name=t["name"],
                description=t.get("description", ""),
                parameters=t.get("input_schema") or {"type": "object", "properties": {}},
            )
            for t in native.get("tools") or []
            if t.get("name")
        ]

        return CanonicalRequest(
            model=native.get("model", ""),
            messages=messages,
            system=system or None,
            tools=tools,
            tool_choice=self._tool_choice_to_canonical(native.get("tool_choice")),
            max_tokens=native.get("max_tokens"),
            temperature=native.get("temperature"),
            top_p=native.get("top_p"),
            stop=list(native.get("stop_sequences") or []),
            stream=bool(native.get("stream", False)),
            reasoning=reasoning_from_claude(native),
            metadata=dict(native.get("metadata") or {}),
        )

    @staticmethod
    def _tool_choice_to_canonical(choice: Any) -> Any:
        if not isinstance(choice, dict):
            return None
        kind = choice.get("type")
        if kind == "tool":
            return {"name": choice.get("name")}
        return {"any": "required"}.get(kind, kind)

    @staticmethod
    def _tool_choice_from_canonical(choice: Any) -> Optional[Dict[str, Any]]:
        if isinstance(choice, dict) and choice.get("name"):
            return {"type": "tool", "name": choice["name"]}
        if choice == "required":
            return {"type": "any"}
        if choice in ("auto", "none"):
            return {"type": choice}
        return None

    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []

        def append(role: str, blocks: List[Dict[str, Any]]) -> None:
            # Claude 要求 user/assistant 交替，相邻同角色合并
            if messages and messages[-1]["role"] == role:
                messages[-1]["content"].extend(blocks)
            else:
                messages.append({"role": role, "content": blocks})

        for msg in request.messages:
            if msg.role is Role.TOOL:
                append("user", [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": msg.text,
                }])
                continue

            blocks: List[Dict[str, Any]] = []
            if msg.role is Role.ASSISTANT:
                # 上游只接受带签名或加密的推理块
                blocks.extend(
                    _reasoning_to_native(b) for b in msg.reasoning_blocks if b.signature or b.is_redacted
                )
            for part in msg.content_parts:
                if isinstance(part, TextPart):
                    if part.text:
                        blocks.append({"type": "text", "text": part.text})
                elif isinstance(part, ImagePart):
                    blocks.append(_image_block(part))
                elif isinstance(part, FilePart) and part.data:
                    blocks.append({"type": "document", "source": {
                        "type": "base64", "media_type": part.media_type or "application/pdf", "data": part.data,
                    }})
            for tc in msg.tool_calls:
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.parsed_arguments()})
            if blocks:
                append("assistant" if msg.role is Role.ASSISTANT else "user", blocks)

        body: Dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if request.system:
            body["system"] = request.system
        if request.tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in request.tools
            ]
        tool_choice = self._tool_choice_from_canonical(request.tool_choice)
        if tool_choice:
            body["tool_choice"] = tool_choice
        if request.stop:
            body["stop_sequences"] = list(request.stop)

        thinking = reasoning_to_claude(request.reasoning)
        if thinking:
            body["thinking"] = thinking
            budget = thinking.get("budget_tokens")
            # max_tokens 必须大于 thinking 预算
            if budget and body["max_tokens"] <= budget:
                body["max_tokens"] = budget + DEFAULT_MAX_TOKENS
        else:
            if request.temperature is not None:
                body["temperature"] = request.temperature
            if request.top_p is not None:
                body["top_p"] = request.top_p
        if request.stream:
            body["stream"] = True
        return body

    # ====================== 非流式响应 ======================

    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        content = require(native, "content", self.protocol)
        if not isinstance(content, list):
            raise ConversionError("claude response content must be a list")

        texts: List[str] = []
        reasoning_blocks: List[ReasoningBlock] = []
        tool_calls: List[ToolCall] = []
        for block in content:
            block_type = block.get("type") if isinstance(block, dict) else None
            if block_type == "text":
                texts.append(block.get("text", ""))
            elif block_type in ("thinking", "redacted_thinking"):
                reasoning_blocks.append(_reasoning_block(block))
            elif block_type == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id") or new_id("toolu_"),
                    name=block.get("name", ""),
                    arguments=ensure_json_text(block.get("input")),
                ))

        usage = native.get("usage") or {}
        return CanonicalResponse(
            model=native.get("model", ""),
            id=native.get("id") or new_id("msg_"),
            text="".join(texts),
            reasoning="".join(b.text for b in reasoning_blocks) or None,
            reasoning_blocks=reasoning_blocks,
            tool_calls=tool_calls,
            finish_reason=STOP_REASONS.get(native.get("stop_reason"), "stop"),
            usage=Usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
        )

    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = []
        if response.reasoning_blocks:
            content.extend(_reasoning_to_native(b) for b in response.reasoning_blocks)
        elif response.reasoning:
            content.append({"type": "thinking", "thinking": response.reasoning})
        if response.text:
            content.append({"type": "text", "text": response.text})
        for tc in response.tool_calls:
            content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.parsed_arguments()})
        return {
            "id": response.id,
            "type": "message",
            "role": "assistant",
            "model": response.model,
            "content": content,
            "stop_reason": _FINISH_TO_STOP.get(response.finish_reason, "end_turn"),
            "stop_sequence": None,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        }

    # ====================== 流式 ======================

    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        event_type = native_chunk["type"]
        tool_blocks: Dict[int, int] = state.scratch.setdefault("tool_blocks", {})

        if event_type == "message_start":
            message = native_chunk.get("message") or {}
            usage = message.get("usage") or {}
            state.usage.input_tokens = usage.get("input_tokens", state.usage.input_tokens)
            if message.get("id"):
                state.message_id = message["id"]
            return []

        if event_type == "content_block_start":
            block = native_chunk["content_block"]
            index = native_chunk.get("index", 0)
            if block.get("type") == "tool_use":
                tool_index = len(tool_blocks)
                tool_blocks[index] = tool_index
                return [CanonicalChunk.tool_call(tool_index, block.get("id"), block.get("name"), "")]
            if block.get("type") == "text" and block.get("text"):
                return [CanonicalChunk.text_delta(block["text"])]
            if block.get("type") == "thinking" and block.get("thinking"):
                return [CanonicalChunk.reasoning_delta(block["thinking"])]
            if block.get("type") == "redacted_thinking":
                return [CanonicalChunk.redacted_reasoning(block.get("data", ""))]
            return []

        if event_type == "content_block_delta":
            delta = native_chunk["delta"]
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [CanonicalChunk.text_delta(delta["text"])] if delta.get("text") else []
            if delta_type == "thinking_delta":
                return [CanonicalChunk.reasoning_delta(delta["thinking"])] if delta.get("thinking") else []
            if delta_type == "signature_delta":
                return [CanonicalChunk.reasoning_signature(delta["signature"])] if delta.get("signature") else []
            if delta_type == "input_json_delta":
                tool_index = tool_blocks[native_chunk.get("index", 0)]
                return [CanonicalChunk.tool_call(tool_index, None, None, delta.get("partial_json", ""))]
            return []

        if event_type == "message_delta":
            delta = native_chunk.get("delta") or {}
            if delta.get("stop_reason"):
                state.finish_reason = STOP_REASONS.get(delta["stop_reason"], "stop")
            usage = native_chunk.get("usage") or {}
            if "output_tokens" in usage:
                state.usage.output_tokens = usage["output_tokens"]
            if usage.get("input_tokens"):
                state.usage.input_tokens = usage["input_tokens"]
            return []

        if event_type == "message_stop":
            return self._terminate(state)

        if event_type == "error":
            error = native_chunk.get("error") or {}
            error_cls = _STREAM_ERROR_TYPES.get(error.get("type"), ProtocolError)
            return [CanonicalChunk.failure(error_cls(
                f"Upstream stream error: {error.get('message', error.get('type', 'unknown'))}",
                provider_type=self.protocol.value,
            ))]

        # ping / content_block_stop
        return []

    def _message_start(self, state: StreamState) -> List[Dict[str, Any]]:
        if state.started:
            return []
        state.started = True
        return [{
            "type": "message_start",
            "message": {
                "id": state.message_id,
                "type": "message",
                "role": "assistant",
                "model": state.model,
                "content": [],
                "stop_reason": None,
                "stop_sequence": None,
                "usage": {"input_tokens": state.usage.input_tokens, "output_tokens": 0},
            },
        }]

    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        blocks: _ClientBlocks = state.scratch.setdefault("client_blocks", _ClientBlocks())

        if chunk.kind is ChunkKind.USAGE:
            if chunk.usage is not None:
                state.usage = chunk.usage
            return []

        if chunk.kind is ChunkKind.ERROR:
            state.mark_errored()
            error = chunk.error
            return [{"type": "error", "error": {
                "type": getattr(error, "kind", "api_error"),
                "message": getattr(error, "message", str(error)),
            }}]

        events = self._message_start(state)

        if chunk.kind is ChunkKind.REASONING and chunk.redacted is not None:
            events += blocks.open_block({"type": "redacted_thinking", "data": chunk.redacted})
        elif chunk.kind is ChunkKind.REASONING:
            if blocks.current_type != "thinking":
                events += blocks.open_block({"type": "thinking", "thinking": ""})
            if chunk.text:
                events.append({"type": "content_block_delta", "index": blocks.current_index,
                               "delta": {"type": "thinking_delta", "thinking": chunk.text}})
            if chunk.signature:
                events.append({"type": "content_block_delta", "index": blocks.current_index,
                               "delta": {"type": "signature_delta", "signature": chunk.signature}})
        elif chunk.kind is ChunkKind.TEXT:
            if blocks.current_type != "text":
                events += blocks.open_block({"type": "text", "text": ""})
            events.append({"type": "content_block_delta", "index": blocks.current_index,
                           "delta": {"type": "text_delta", "text": chunk.text}})
        elif chunk.kind is ChunkKind.TOOL_CALL:
            if blocks.current_type != "tool_use" or blocks.current_tool != chunk.index:
                events += blocks.open_block({
                    "type": "tool_use",
                    "id": chunk.tool_call_id or new_id("toolu_"),
                    "name": chunk.tool_name or "",
                    "input": {},
                })
                blocks.current_tool = chunk.index
            if chunk.arguments_delta:
                events.append({"type": "content_block_delta", "index": blocks.current_index,
                               "delta": {"type": "input_json_delta", "partial_json": chunk.arguments_delta}})
        elif chunk.kind is ChunkKind.TERMINAL:
            usage = chunk.usage or state.usage
            events += blocks.close_block_if_open()
            events.append({
                "type": "message_delta",
                "delta": {"stop_reason": _FINISH_TO_STOP.get(chunk.finish_reason, "end_turn"), "stop_sequence": None},
                "usage": {"output_tokens": usage.output_tokens},
            })
            events.append({"type": "message_stop"})
            state.mark_terminal()
        return events

    def encode_stream_event(self, event: Dict[str, Any]) -> str:
        return sse_event(event["type"], event)

    def to_client_error(self, error) -> tuple:
        return error.http_status, {
            "type": "error",
            "error": {"type": error.kind, "message": error.message},
        }
