"""
OpenAI Chat Completions 转换器

- 请求: messages（字符串或 part 数组）、tools、tool_choice、reasoning 配置
- 响应: choices[0].message，推理内容放在 reasoning_content
- 流式: choices[0].delta 的 content / reasoning_content / tool_calls 片段，
  finish_reason 只记录，终止块在 [DONE] 或流结束时统一发出（之后可能还有 usage 块）
"""

import time
from typing import Any, Dict, List, Optional

from ..errors import ConversionError, ProtocolError
from ..models import (
    AudioPart,
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    ChunkKind,
    FilePart,
    ImagePart,
    Protocol,
    Role,
    StreamState,
    TextPart,
    ToolCall,
    ToolDefinition,
    Usage,
    ensure_json_text,
    new_id,
)
from ..reasoning import reasoning_from_openai, reasoning_to_openai_effort
from ..sse import SSE_DONE, is_done
from .base import ProtocolConverter, build_data_uri, parse_data_uri, require

__all__ = ["OpenAIConverter", "FINISH_REASONS"]

FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "content_filter": "content_filter",
}


def content_to_parts(content: Any) -> List[Any]:
    """OpenAI content（字符串或 part 数组）→ canonical content parts"""
    if content is None:
        return []
    if isinstance(content, str):
        return [TextPart(content)] if content else []

    parts: List[Any] = []
    for item in content:
        if isinstance(item, str):
            parts.append(TextPart(item))
            continue
        part_type = item.get("type")
        if part_type in ("text", "input_text", "output_text"):
            parts.append(TextPart(item.get("text", "")))
        elif part_type == "image_url":
            image = item.get("image_url")
            url = image.get("url") if isinstance(image, dict) else image
            media_type, _ = parse_data_uri(url)
            parts.append(ImagePart(url=url, media_type=media_type))
        elif part_type == "input_audio":
            audio = item.get("input_audio") or {}
            parts.append(AudioPart(data=audio.get("data", ""), format=audio.get("format")))
        elif part_type == "file":
            file = item.get("file") or {}
            media_type, data = parse_data_uri(file.get("file_data"))
            parts.append(FilePart(
                data=data if data is not None else file.get("file_data"),
                url=file.get("file_id"),
                filename=file.get("filename"),
                media_type=media_type,
            ))
    return parts


def parts_to_content(parts: List[Any]) -> Any:
    """canonical content parts → OpenAI content；纯文本时折叠为字符串"""
    if all(isinstance(p, TextPart) for p in parts):
        return "".join(p.text for p in parts)

    content = []
    for part in parts:
        if isinstance(part, TextPart):
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            content.append({"type": "image_url", "image_url": {"url": part.url}})
        elif isinstance(part, AudioPart):
            content.append({"type": "input_audio", "input_audio": {"data": part.data, "format": part.format or "wav"}})
        elif isinstance(part, FilePart):
            file: Dict[str, Any] = {}
            if part.data:
                file["file_data"] = build_data_uri(part.media_type, part.data)
            elif part.url:
                file["file_id"] = part.url
            if part.filename:
                file["filename"] = part.filename
            content.append({"type": "file", "file": file})
    return content


def tool_choice_to_canonical(choice: Any) -> Any:
    if isinstance(choice, str):
        return choice
    if isinstance(choice, dict):
        function = choice.get("function") or {}
        if function.get("name"):
            return {"name": function["name"]}
    return None


def tool_choice_from_canonical(choice: Any) -> Any:
    if isinstance(choice, dict) and choice.get("name"):
        return {"type": "function", "function": {"name": choice["name"]}}
    return choice


class OpenAIConverter(ProtocolConverter):
    protocol = Protocol.OPENAI

    # ====================== 请求 ======================

    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        raw_messages = require(native, "messages", self.protocol, status_code=400)
        if not isinstance(raw_messages, list):
            raise ConversionError("openai 'messages' must be a list", status_code=400)

        system_texts: List[str] = []
        messages: List[CanonicalMessage] = []

        for raw in raw_messages:
            role = raw.get("role")
            if role in ("system", "developer"):
                text = "".join(p.text for p in content_to_parts(raw.get("content")) if isinstance(p, TextPart))
                if text:
                    system_texts.append(text)
            elif role == "user":
                messages.append(CanonicalMessage(Role.USER, content_to_parts(raw.get("content")), name=raw.get("name")))
            elif role == "assistant":
                tool_calls = [
                    ToolCall(
                        id=tc.get("id") or new_id("call_"),
                        name=(tc.get("function") or {}).get("name", ""),
                        arguments=ensure_json_text((tc.get("function") or {}).get("arguments")),
                    )
                    for tc in raw.get("tool_calls") or []
                ]
                messages.append(CanonicalMessage(
                    Role.ASSISTANT,
                    content_to_parts(raw.get("content")),
                    tool_calls=tool_calls,
                    reasoning=raw.get("reasoning_content") or None,
                ))
            elif role == "tool":
                messages.append(CanonicalMessage(
                    Role.TOOL,
                    content_to_parts(raw.get("content")),
                    tool_call_id=raw.get("tool_call_id"),
                    name=raw.get("name"),
                ))
            else:
                raise ConversionError(f"openai message has unsupported role {role!r}", status_code=400)

        tools = []
        for tool in native.get("tools") or []:
            function = tool.get("function") or {}
            if tool.get("type", "function") != "function" or not function.get("name"):
                continue
            tools.append(ToolDefinition(
                name=function["name"],
                description=function.get("description", ""),
                parameters=function.get("parameters") or {"type": "object", "properties": {}},
            ))

        stop = native.get("stop")
        metadata = {"user": native["user"]} if native.get("user") else {}

        return CanonicalRequest(
            model=native.get("model", ""),
            messages=messages,
            system="\n\n".join(system_texts) or None,
            tools=tools,
            tool_choice=tool_choice_to_canonical(native.get("tool_choice")),
            max_tokens=native.get("max_completion_tokens", native.get("max_tokens")),
            temperature=native.get("temperature"),
            top_p=native.get("top_p"),
            stop=[stop] if isinstance(stop, str) else list(stop or []),
            stream=bool(native.get("stream", False)),
            reasoning=reasoning_from_openai(native),
            metadata=metadata,
        )

    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        messages: List[Dict[str, Any]] = []
        if request.system:
            messages.append({"role": "system", "content": request.system})

        for msg in request.messages:
            if msg.role is Role.TOOL:
                messages.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.text,
                })
            elif msg.role is Role.ASSISTANT:
                out: Dict[str, Any] = {"role": "assistant", "content": parts_to_content(msg.content_parts) or None}
                if msg.reasoning:
                    out["reasoning_content"] = msg.reasoning
                if msg.tool_calls:
                    out["tool_calls"] = [
                        {"id": tc.id, "type": "function", "function": {"name": tc.name, "arguments": tc.arguments}}
                        for tc in msg.tool_calls
                    ]
                messages.append(out)
            else:
                out = {"role": msg.role.value, "content": parts_to_content(msg.content_parts)}
                if msg.name:
                    out["name"] = msg.name
                messages.append(out)

        body: Dict[str, Any] = {"model": request.model, "messages": messages}
        if request.tools:
            body["tools"] = [
                {"type": "function", "function": {"name": t.name, "description": t.description, "parameters": t.parameters}}
                for t in request.tools
            ]
        if request.tool_choice is not None:
            body["tool_choice"] = tool_choice_from_canonical(request.tool_choice)
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.stop:
            body["stop"] = list(request.stop)
        effort = reasoning_to_openai_effort(request.reasoning)
        if effort:
            body["reasoning_effort"] = effort
        if request.stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    # ====================== 非流式响应 ======================

    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        choices = require(native, "choices", self.protocol)
        if not isinstance(choices, list) or not choices:
            raise ConversionError("openai response has no choices")
        message = require(choices[0], "message", self.protocol)
        if not isinstance(message, dict):
            raise ConversionError("openai response message must be an object")

        content = message.get("content")
        if isinstance(content, list):
            content = "".join(p.text for p in content_to_parts(content) if isinstance(p, TextPart))

        tool_calls = [
            ToolCall(
                id=tc.get("id") or new_id("call_"),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=ensure_json_text((tc.get("function") or {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]
        usage = native.get("usage") or {}

        return CanonicalResponse(
            model=native.get("model", ""),
            id=native.get("id") or new_id("chatcmpl-"),
            text=content or "",
            reasoning=message.get("reasoning_content") or None,
            tool_calls=tool_calls,
            finish_reason=FINISH_REASONS.get(choices[0].get("finish_reason"), "stop"),
            usage=Usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)),
        )

    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "assistant", "content": response.text or None}
        if response.reasoning:
            message["reasoning_content"] = response.reasoning
        if response.tool_calls:
            message["tool_calls"] = [
                {"id": tc.id, "type": "function", "function": {"name": tc.name, "arguments": tc.arguments}}
                for tc in response.tool_calls
            ]
        return {
            "id": response.id,
            "object": "chat.completion",
            "created": response.created,
            "model": response.model,
            "choices": [{"index": 0, "message": message, "finish_reason": response.finish_reason}],
            "usage": {
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.total_tokens,
            },
        }

    # ====================== 流式 ======================

    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        if is_done(native_chunk):
            return self._terminate(state)
        if "error" in native_chunk:
            error = native_chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return [CanonicalChunk.failure(ProtocolError(f"Upstream stream error: {message}", provider_type=self.protocol.value))]

        chunks: List[CanonicalChunk] = []
        for choice in native_chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                chunks.append(CanonicalChunk.reasoning_delta(reasoning))
            if delta.get("content"):
                chunks.append(CanonicalChunk.text_delta(delta["content"]))
            for tc in delta.get("tool_calls") or []:
                function = tc.get("function") or {}
                chunks.append(CanonicalChunk.tool_call(
                    index=tc.get("index", 0),
                    tool_call_id=tc.get("id"),
                    name=function.get("name"),
                    arguments_delta=function.get("arguments") or "",
                ))
            if choice.get("finish_reason"):
                state.finish_reason = FINISH_REASONS.get(choice["finish_reason"], "stop")

        usage = native_chunk.get("usage")
        if usage:
            chunks.append(CanonicalChunk(
                ChunkKind.USAGE,
                usage=Usage(usage.get("prompt_tokens", 0), usage.get("completion_tokens", 0)),
            ))
        return chunks

    def _client_chunk(self, state: StreamState, delta: Dict[str, Any],
                      finish_reason: Optional[str] = None) -> Dict[str, Any]:
        scratch = state.scratch
        if not scratch.get("role_sent"):
            delta = {"role": "assistant", **delta}
            scratch["role_sent"] = True
        return {
            "id": scratch.setdefault("id", new_id("chatcmpl-")),
            "object": "chat.completion.chunk",
            "created": scratch.setdefault("created", int(time.time())),
            "model": state.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        if chunk.is_opaque_reasoning:
            return []
        if chunk.kind is ChunkKind.TEXT:
            return [self._client_chunk(state, {"content": chunk.text})]
        if chunk.kind is ChunkKind.REASONING:
            return [self._client_chunk(state, {"reasoning_content": chunk.text})]
        if chunk.kind is ChunkKind.TOOL_CALL:
            call: Dict[str, Any] = {"index": chunk.index}
            function: Dict[str, Any] = {"arguments": chunk.arguments_delta}
            if chunk.tool_call_id:
                call["id"] = chunk.tool_call_id
                call["type"] = "function"
            if chunk.tool_name:
                function["name"] = chunk.tool_name
            call["function"] = function
            return [self._client_chunk(state, {"tool_calls": [call]})]
        if chunk.kind is ChunkKind.USAGE:
            if chunk.usage is not None:
                state.usage = chunk.usage
            return []
        if chunk.kind is ChunkKind.TERMINAL:
            usage = chunk.usage or state.usage
            event = self._client_chunk(state, {}, chunk.finish_reason or "stop")
            event["usage"] = {
                "prompt_tokens": usage.input_tokens,
                "completion_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            }
            state.mark_terminal()
            return [event]
        if chunk.kind is ChunkKind.ERROR:
            state.mark_errored()
            error = chunk.error
            return [{"error": {
                "message": getattr(error, "message", str(error)),
                "type": getattr(error, "kind", "relay_error"),
            }}]
        return []

    def stream_done_marker(self) -> Optional[str]:
        return SSE_DONE
