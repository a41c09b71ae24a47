"""
OpenAI Responses API 转换器

- 请求: input（字符串或 message / function_call / function_call_output / reasoning 条目）、
  instructions、max_output_tokens、reasoning.effort、扁平的 function tools
- 响应: output 条目 (reasoning / message / function_call)
- 流式: response.output_text.delta / response.reasoning_summary_text.delta /
  response.function_call_arguments.delta / response.completed 等事件
"""

import time
from typing import Any, Dict, List, Optional

from ..errors import ConversionError, ProtocolError
from ..models import (
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
from ..reasoning import reasoning_from_responses, reasoning_to_openai_effort
from ..sse import sse_event
from .base import ProtocolConverter, build_data_uri, parse_data_uri, require

__all__ = ["OpenAIResponsesConverter"]

_INCOMPLETE_REASONS = {
    "max_output_tokens": "length",
    "content_filter": "content_filter",
}


def _input_parts(content: Any) -> List[Any]:
    if isinstance(content, str):
        return [TextPart(content)] if content else []
    parts: List[Any] = []
    for item in content or []:
        part_type = item.get("type")
        if part_type in ("input_text", "output_text", "text"):
            parts.append(TextPart(item.get("text", "")))
        elif part_type == "input_image":
            url = item.get("image_url") or item.get("file_id", "")
            media_type, _ = parse_data_uri(url)
            parts.append(ImagePart(url=url, media_type=media_type))
        elif part_type == "input_file":
            media_type, data = parse_data_uri(item.get("file_data"))
            parts.append(FilePart(
                data=data if data is not None else item.get("file_data"),
                url=item.get("file_id") or item.get("file_url"),
                filename=item.get("filename"),
                media_type=media_type,
            ))
    return parts


def _output_parts(role: Role, parts: List[Any]) -> List[Dict[str, Any]]:
    text_type = "output_text" if role is Role.ASSISTANT else "input_text"
    content: List[Dict[str, Any]] = []
    for part in parts:
        if isinstance(part, TextPart):
            content.append({"type": text_type, "text": part.text})
        elif isinstance(part, ImagePart):
            content.append({"type": "input_image", "image_url": part.url})
        elif isinstance(part, FilePart):
            item: Dict[str, Any] = {"type": "input_file"}
            if part.data:
                item["file_data"] = build_data_uri(part.media_type, part.data)
            elif part.url:
                item["file_id"] = part.url
            if part.filename:
                item["filename"] = part.filename
            content.append(item)
    return content


class _ResponsesWriter:
    """输出端 output 条目记账"""

    def __init__(self, response_id: str, model: str):
        self.response_id = response_id
        self.model = model
        self.created_at = int(time.time())
        self.sequence = 0
        self.items: List[Dict[str, Any]] = []
        self.current: Optional[Dict[str, Any]] = None
        self.current_tool: Optional[int] = None

    def event(self, event_type: str, **fields: Any) -> Dict[str, Any]:
        event = {"type": event_type, "sequence_number": self.sequence, **fields}
        self.sequence += 1
        return event

    def response(self, status: str, usage: Optional[Usage] = None, finish_reason: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "id": self.response_id,
            "object": "response",
            "created_at": self.created_at,
            "status": status,
            "model": self.model,
            "output": list(self.items),
        }
        if usage is not None:
            body["usage"] = {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "total_tokens": usage.total_tokens,
            }
        if status == "incomplete":
            reason = "content_filter" if finish_reason == "content_filter" else "max_output_tokens"
            body["incomplete_details"] = {"reason": reason}
        return body

    @property
    def output_index(self) -> int:
        return len(self.items)

    def close_current(self) -> List[Dict[str, Any]]:
        item = self.current
        if item is None:
            return []
        self.current = None
        self.current_tool = None
        index = self.output_index
        events: List[Dict[str, Any]] = []
        if item["type"] == "reasoning":
            text = item["summary"][0]["text"]
            events.append(self.event("response.reasoning_summary_text.done", item_id=item["id"],
                                     output_index=index, summary_index=0, text=text))
            events.append(self.event("response.reasoning_summary_part.done", item_id=item["id"],
                                     output_index=index, summary_index=0, part=item["summary"][0]))
        elif item["type"] == "message":
            part = item["content"][0]
            item["status"] = "completed"
            events.append(self.event("response.output_text.done", item_id=item["id"],
                                     output_index=index, content_index=0, text=part["text"]))
            events.append(self.event("response.content_part.done", item_id=item["id"],
                                     output_index=index, content_index=0, part=part))
        elif item["type"] == "function_call":
            item["status"] = "completed"
            events.append(self.event("response.function_call_arguments.done", item_id=item["id"],
                                     output_index=index, arguments=item["arguments"]))
        events.append(self.event("response.output_item.done", output_index=index, item=item))
        self.items.append(item)
        return events

    def open(self, item: Dict[str, Any]) -> List[Dict[str, Any]]:
        events = self.close_current()
        self.current = item
        index = self.output_index
        if item["type"] == "reasoning":
            added = {"id": item["id"], "type": "reasoning", "summary": []}
            events.append(self.event("response.output_item.added", output_index=index, item=added))
            events.append(self.event("response.reasoning_summary_part.added", item_id=item["id"], output_index=index,
                                     summary_index=0, part={"type": "summary_text", "text": ""}))
        elif item["type"] == "message":
            added = {"id": item["id"], "type": "message", "role": "assistant", "status": "in_progress", "content": []}
            events.append(self.event("response.output_item.added", output_index=index, item=added))
            events.append(self.event("response.content_part.added", item_id=item["id"], output_index=index,
                                     content_index=0, part={"type": "output_text", "text": "", "annotations": []}))
        else:
            events.append(self.event("response.output_item.added", output_index=index, item=dict(item)))
        return events


class OpenAIResponsesConverter(ProtocolConverter):
    protocol = Protocol.OPENAI_RESPONSES

    # ====================== 请求 ======================

    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        raw_input = require(native, "input", self.protocol, status_code=400)
        system_texts: List[str] = []
        if native.get("instructions"):
            system_texts.append(native["instructions"])

        messages: List[CanonicalMessage] = []
        pending_reasoning: List[str] = []

        def assistant_message() -> CanonicalMessage:
            if messages and messages[-1].role is Role.ASSISTANT and not messages[-1].tool_call_id:
                return messages[-1]
            msg = CanonicalMessage(Role.ASSISTANT)
            messages.append(msg)
            return msg

        def take_reasoning(msg: CanonicalMessage) -> None:
            if pending_reasoning:
                msg.reasoning = (msg.reasoning or "") + "".join(pending_reasoning)
                pending_reasoning.clear()

        if isinstance(raw_input, str):
            messages.append(CanonicalMessage.from_text(Role.USER, raw_input))
        elif isinstance(raw_input, list):
            for item in raw_input:
                item_type = item.get("type", "message")
                if item_type == "message":
                    role = item.get("role", "user")
                    parts = _input_parts(item.get("content"))
                    if role in ("system", "developer"):
                        system_texts.append("".join(p.text for p in parts if isinstance(p, TextPart)))
                    elif role == "assistant":
                        msg = CanonicalMessage(Role.ASSISTANT, parts)
                        take_reasoning(msg)
                        messages.append(msg)
                    else:
                        messages.append(CanonicalMessage(Role.USER, parts))
                elif item_type == "function_call":
                    msg = assistant_message()
                    take_reasoning(msg)
                    msg.tool_calls.append(ToolCall(
                        id=item.get("call_id") or item.get("id") or new_id("call_"),
                        name=item.get("name", ""),
                        arguments=ensure_json_text(item.get("arguments")),
                    ))
                elif item_type == "function_call_output":
                    output = item.get("output")
                    messages.append(CanonicalMessage(
                        Role.TOOL,
                        [TextPart(output if isinstance(output, str) else ensure_json_text(output))],
                        tool_call_id=item.get("call_id"),
                    ))
                elif item_type == "reasoning":
                    pending_reasoning.extend(
                        s.get("text", "") for s in item.get("summary") or [] if isinstance(s, dict)
                    )
        else:
            raise ConversionError("responses 'input' must be a string or a list", status_code=400)

        tools = [
            ToolDefinition(
                name=t["name"],
                description=t.get("description") or "",
                parameters=t.get("parameters") or {"type": "object", "properties": {}},
            )
            for t in native.get("tools") or []
            if t.get("type", "function") == "function" and t.get("name")
        ]

        tool_choice = native.get("tool_choice")
        if isinstance(tool_choice, dict):
            tool_choice = {"name": tool_choice["name"]} if tool_choice.get("name") else None

        return CanonicalRequest(
            model=native.get("model", ""),
            messages=messages,
            system="\n\n".join(t for t in system_texts if t) or None,
            tools=tools,
            tool_choice=tool_choice,
            max_tokens=native.get("max_output_tokens"),
            temperature=native.get("temperature"),
            top_p=native.get("top_p"),
            stream=bool(native.get("stream", False)),
            reasoning=reasoning_from_responses(native),
            metadata=dict(native.get("metadata") or {}),
        )

    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = []
        for msg in request.messages:
            if msg.role is Role.TOOL:
                items.append({"type": "function_call_output", "call_id": msg.tool_call_id, "output": msg.text})
                continue
            if msg.reasoning and msg.role is Role.ASSISTANT:
                items.append({"type": "reasoning", "summary": [{"type": "summary_text", "text": msg.reasoning}]})
            content = _output_parts(msg.role, msg.content_parts)
            if content:
                items.append({"type": "message", "role": msg.role.value, "content": content})
            for tc in msg.tool_calls:
                items.append({"type": "function_call", "call_id": tc.id, "name": tc.name, "arguments": tc.arguments})

        body: Dict[str, Any] = {"model": request.model, "input": items}
        if request.system:
            body["instructions"] = request.system
        if request.tools:
            body["tools"] = [
                {"type": "function", "name": t.name, "description": t.description, "parameters": t.parameters}
                for t in request.tools
            ]
        if isinstance(request.tool_choice, dict) and request.tool_choice.get("name"):
            body["tool_choice"] = {"type": "function", "name": request.tool_choice["name"]}
        elif request.tool_choice is not None:
            body["tool_choice"] = request.tool_choice
        if request.max_tokens is not None:
            body["max_output_tokens"] = request.max_tokens
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        effort = reasoning_to_openai_effort(request.reasoning)
        if effort:
            body["reasoning"] = {"effort": effort, "summary": "auto"}
        if request.stream:
            body["stream"] = True
        return body

    # ====================== 非流式响应 ======================

    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        output = require(native, "output", self.protocol)
        if not isinstance(output, list):
            raise ConversionError("responses output must be a list")

        texts: List[str] = []
        reasoning: List[str] = []
        tool_calls: List[ToolCall] = []
        for item in output:
            item_type = item.get("type")
            if item_type == "reasoning":
                reasoning.extend(s.get("text", "") for s in item.get("summary") or [])
                reasoning.extend(c.get("text", "") for c in item.get("content") or [] if c.get("type") == "reasoning_text")
            elif item_type == "message":
                texts.extend(c.get("text", "") for c in item.get("content") or [] if c.get("type") == "output_text")
            elif item_type == "function_call":
                tool_calls.append(ToolCall(
                    id=item.get("call_id") or item.get("id") or new_id("call_"),
                    name=item.get("name", ""),
                    arguments=ensure_json_text(item.get("arguments")),
                ))

        usage = native.get("usage") or {}
        return CanonicalResponse(
            model=native.get("model", ""),
            id=native.get("id") or new_id("resp_"),
            text="".join(texts),
            reasoning="".join(reasoning) or None,
            tool_calls=tool_calls,
            finish_reason=self._finish_reason(native, bool(tool_calls)),
            usage=Usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)),
        )

    @staticmethod
    def _finish_reason(native: Dict[str, Any], has_tool_calls: bool) -> str:
        if native.get("status") == "incomplete":
            reason = (native.get("incomplete_details") or {}).get("reason")
            return _INCOMPLETE_REASONS.get(reason, "length")
        return "tool_calls" if has_tool_calls else "stop"

    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        output: List[Dict[str, Any]] = []
        if response.reasoning:
            output.append({"id": new_id("rs_"), "type": "reasoning",
                           "summary": [{"type": "summary_text", "text": response.reasoning}]})
        if response.text:
            output.append({
                "id": new_id("msg_"),
                "type": "message",
                "role": "assistant",
                "status": "completed",
                "content": [{"type": "output_text", "text": response.text, "annotations": []}],
            })
        for tc in response.tool_calls:
            output.append({"id": new_id("fc_"), "type": "function_call", "call_id": tc.id,
                           "name": tc.name, "arguments": tc.arguments, "status": "completed"})

        status = "incomplete" if response.finish_reason in ("length", "content_filter") else "completed"
        body: Dict[str, Any] = {
            "id": response.id,
            "object": "response",
            "created_at": response.created,
            "status": status,
            "model": response.model,
            "output": output,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.total_tokens,
            },
        }
        if status == "incomplete":
            body["incomplete_details"] = {
                "reason": "content_filter" if response.finish_reason == "content_filter" else "max_output_tokens"
            }
        return body

    # ====================== 流式 ======================

    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        event_type = native_chunk["type"]
        tool_items: Dict[int, int] = state.scratch.setdefault("tool_items", {})

        if event_type == "response.output_text.delta":
            return [CanonicalChunk.text_delta(native_chunk["delta"])] if native_chunk.get("delta") else []
        if event_type in ("response.reasoning_summary_text.delta", "response.reasoning_text.delta"):
            return [CanonicalChunk.reasoning_delta(native_chunk["delta"])] if native_chunk.get("delta") else []
        if event_type == "response.output_item.added":
            item = native_chunk["item"]
            if item.get("type") != "function_call":
                return []
            tool_index = len(tool_items)
            tool_items[native_chunk.get("output_index", tool_index)] = tool_index
            return [CanonicalChunk.tool_call(tool_index, item.get("call_id"), item.get("name"),
                                             item.get("arguments") or "")]
        if event_type == "response.function_call_arguments.delta":
            tool_index = tool_items[native_chunk.get("output_index", 0)]
            return [CanonicalChunk.tool_call(tool_index, None, None, native_chunk.get("delta", ""))]
        if event_type in ("response.completed", "response.incomplete"):
            response = native_chunk.get("response") or {}
            usage = response.get("usage") or {}
            finish_reason = self._finish_reason(response, state.saw_tool_call)
            return self._terminate(state, finish_reason, Usage(usage.get("input_tokens", 0), usage.get("output_tokens", 0)))
        if event_type in ("response.failed", "error"):
            error = native_chunk.get("error") or (native_chunk.get("response") or {}).get("error") or {}
            message = error.get("message") if isinstance(error, dict) else native_chunk.get("message", "unknown")
            return [CanonicalChunk.failure(ProtocolError(f"Upstream stream error: {message}", provider_type=self.protocol.value))]
        return []

    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        if chunk.is_opaque_reasoning:
            return []
        writer: Optional[_ResponsesWriter] = state.scratch.get("writer")
        events: List[Dict[str, Any]] = []
        if writer is None:
            writer = _ResponsesWriter(new_id("resp_"), state.model)
            state.scratch["writer"] = writer
            events.append(writer.event("response.created", response=writer.response("in_progress")))

        if chunk.kind is ChunkKind.REASONING:
            if writer.current is None or writer.current["type"] != "reasoning":
                events += writer.open({"id": new_id("rs_"), "type": "reasoning",
                                       "summary": [{"type": "summary_text", "text": ""}]})
            writer.current["summary"][0]["text"] += chunk.text
            events.append(writer.event("response.reasoning_summary_text.delta", item_id=writer.current["id"],
                                       output_index=writer.output_index, summary_index=0, delta=chunk.text))
        elif chunk.kind is ChunkKind.TEXT:
            if writer.current is None or writer.current["type"] != "message":
                events += writer.open({"id": new_id("msg_"), "type": "message", "role": "assistant",
                                       "status": "in_progress",
                                       "content": [{"type": "output_text", "text": "", "annotations": []}]})
            writer.current["content"][0]["text"] += chunk.text
            events.append(writer.event("response.output_text.delta", item_id=writer.current["id"],
                                       output_index=writer.output_index, content_index=0, delta=chunk.text))
        elif chunk.kind is ChunkKind.TOOL_CALL:
            if writer.current is None or writer.current["type"] != "function_call" or writer.current_tool != chunk.index:
                events += writer.open({"id": new_id("fc_"), "type": "function_call",
                                       "call_id": chunk.tool_call_id or new_id("call_"),
                                       "name": chunk.tool_name or "", "arguments": "", "status": "in_progress"})
                writer.current_tool = chunk.index
            if chunk.arguments_delta:
                writer.current["arguments"] += chunk.arguments_delta
                events.append(writer.event("response.function_call_arguments.delta", item_id=writer.current["id"],
                                           output_index=writer.output_index, delta=chunk.arguments_delta))
        elif chunk.kind is ChunkKind.USAGE:
            if chunk.usage is not None:
                state.usage = chunk.usage
        elif chunk.kind is ChunkKind.TERMINAL:
            events += writer.close_current()
            status = "incomplete" if chunk.finish_reason in ("length", "content_filter") else "completed"
            event_type = "response.incomplete" if status == "incomplete" else "response.completed"
            events.append(writer.event(event_type, response=writer.response(
                status, chunk.usage or state.usage, chunk.finish_reason)))
            state.mark_terminal()
        elif chunk.kind is ChunkKind.ERROR:
            state.mark_errored()
            error = chunk.error
            events.append(writer.event("error", code=getattr(error, "kind", "relay_error"),
                                       message=getattr(error, "message", str(error))))
        return events

    def encode_stream_event(self, event: Dict[str, Any]) -> str:
        return sse_event(event["type"], event)
