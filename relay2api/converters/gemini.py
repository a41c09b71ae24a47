"""
Gemini (generateContent) 转换器

- 请求: contents[].parts、systemInstruction、generationConfig(thinkingConfig)、
  tools[].functionDeclarations、toolConfig
- 响应: candidates[0].content.parts，thought=true 的 part 为推理内容
- 流式: 每个块都是完整的 GenerateContentResponse

Gemini 的 functionCall 不带 id，这里合成 call_<hex>，并在请求端按 id 反查函数名。
Gemini CLI 风格的 {"response": {...}} 包装会被自动解开。
"""

import json
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
    dump_json,
    new_id,
)
from ..reasoning import reasoning_from_gemini, reasoning_to_gemini
from .base import ProtocolConverter, build_data_uri, parse_data_uri, require

__all__ = ["GeminiConverter", "FINISH_REASONS", "unwrap_response"]

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
    "IMAGE_SAFETY": "content_filter",
}
_FINISH_TO_GEMINI = {
    "stop": "STOP",
    "tool_calls": "STOP",
    "length": "MAX_TOKENS",
    "content_filter": "SAFETY",
    "error": "OTHER",
}


def _call_id() -> str:
    return new_id("call_")


def unwrap_response(native: Any) -> Any:
    """解开 {"response": {...}} 包装"""
    if isinstance(native, dict) and "candidates" not in native and isinstance(native.get("response"), dict):
        return native["response"]
    return native


def _usage(metadata: Optional[Dict[str, Any]]) -> Optional[Usage]:
    if not metadata:
        return None
    output = metadata.get("candidatesTokenCount", 0) + metadata.get("thoughtsTokenCount", 0)
    return Usage(metadata.get("promptTokenCount", 0), output)


def _function_response_text(response: Any) -> str:
    if isinstance(response, dict) and set(response) == {"result"} and isinstance(response["result"], str):
        return response["result"]
    return dump_json(response)


def _function_response_body(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return {"result": text}
    return value if isinstance(value, dict) else {"result": value}


class GeminiConverter(ProtocolConverter):
    protocol = Protocol.GEMINI

    # ====================== 请求 ======================

    def _parts_to_canonical(self, role: str, parts: List[Dict[str, Any]],
                            pending_calls: Dict[str, List[str]]) -> List[CanonicalMessage]:
        content: List[Any] = []
        tool_calls: List[ToolCall] = []
        reasoning: List[str] = []
        tool_messages: List[CanonicalMessage] = []

        for part in parts:
            if "text" in part:
                if part.get("thought"):
                    reasoning.append(part["text"])
                else:
                    content.append(TextPart(part["text"]))
            elif "inlineData" in part:
                inline = part["inlineData"]
                mime = inline.get("mimeType", "")
                if mime.startswith("image/"):
                    content.append(ImagePart(url=build_data_uri(mime, inline.get("data", "")), media_type=mime))
                elif mime.startswith("audio/"):
                    content.append(AudioPart(data=inline.get("data", ""), format=mime.split("/", 1)[1]))
                else:
                    content.append(FilePart(data=inline.get("data"), media_type=mime or None))
            elif "fileData" in part:
                file = part["fileData"]
                mime = file.get("mimeType", "")
                if mime.startswith("image/"):
                    content.append(ImagePart(url=file.get("fileUri", ""), media_type=mime))
                else:
                    content.append(FilePart(url=file.get("fileUri"), media_type=mime or None))
            elif "functionCall" in part:
                call = part["functionCall"]
                call_id = call.get("id") or _call_id()
                pending_calls.setdefault(call.get("name", ""), []).append(call_id)
                tool_calls.append(ToolCall(id=call_id, name=call.get("name", ""),
                                           arguments=dump_json(call.get("args") or {})))
            elif "functionResponse" in part:
                resp = part["functionResponse"]
                name = resp.get("name", "")
                call_id = resp.get("id")
                if not call_id:
                    queue = pending_calls.get(name) or []
                    call_id = queue.pop(0) if queue else _call_id()
                tool_messages.append(CanonicalMessage(
                    Role.TOOL,
                    [TextPart(_function_response_text(resp.get("response")))],
                    tool_call_id=call_id,
                    name=name,
                ))

        messages = list(tool_messages)
        if content or tool_calls or reasoning or not tool_messages:
            messages.append(CanonicalMessage(
                Role.ASSISTANT if role == "model" else Role.USER,
                content,
                tool_calls=tool_calls,
                reasoning="".join(reasoning) or None,
            ))
        return messages

    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        outer = native
        if isinstance(native, dict) and "contents" not in native and isinstance(native.get("request"), dict):
            native = native["request"]
        contents = require(native, "contents", self.protocol, status_code=400)
        if not isinstance(contents, list):
            raise ConversionError("gemini 'contents' must be a list", status_code=400)

        pending_calls: Dict[str, List[str]] = {}
        messages: List[CanonicalMessage] = []
        for item in contents:
            messages.extend(self._parts_to_canonical(item.get("role", "user"), item.get("parts") or [], pending_calls))

        system_instruction = native.get("systemInstruction") or native.get("system_instruction") or {}
        system = "".join(p.get("text", "") for p in system_instruction.get("parts") or [])

        tools = []
        for tool in native.get("tools") or []:
            for decl in tool.get("functionDeclarations") or tool.get("function_declarations") or []:
                tools.append(ToolDefinition(
                    name=decl["name"],
                    description=decl.get("description", ""),
                    parameters=decl.get("parameters") or decl.get("parametersJsonSchema")
                    or {"type": "object", "properties": {}},
                ))

        generation = native.get("generationConfig") or {}
        return CanonicalRequest(
            model=outer.get("model") or native.get("model", ""),
            messages=messages,
            system=system or None,
            tools=tools,
            tool_choice=self._tool_choice_to_canonical(native.get("toolConfig")),
            max_tokens=generation.get("maxOutputTokens"),
            temperature=generation.get("temperature"),
            top_p=generation.get("topP"),
            stop=list(generation.get("stopSequences") or []),
            stream=bool(outer.get("stream", False)),
            reasoning=reasoning_from_gemini(generation),
        )

    @staticmethod
    def _tool_choice_to_canonical(tool_config: Any) -> Any:
        if not isinstance(tool_config, dict):
            return None
        config = tool_config.get("functionCallingConfig") or {}
        mode = str(config.get("mode", "")).upper()
        allowed = config.get("allowedFunctionNames") or []
        if mode == "ANY":
            return {"name": allowed[0]} if len(allowed) == 1 else "required"
        return {"AUTO": "auto", "NONE": "none"}.get(mode)

    @staticmethod
    def _tool_choice_from_canonical(choice: Any) -> Optional[Dict[str, Any]]:
        if isinstance(choice, dict) and choice.get("name"):
            return {"functionCallingConfig": {"mode": "ANY", "allowedFunctionNames": [choice["name"]]}}
        mode = {"auto": "AUTO", "none": "NONE", "required": "ANY"}.get(choice)
        return {"functionCallingConfig": {"mode": mode}} if mode else None

    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        contents: List[Dict[str, Any]] = []
        call_names: Dict[str, str] = {}

        def append(role: str, parts: List[Dict[str, Any]]) -> None:
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})

        for msg in request.messages:
            if msg.role is Role.TOOL:
                append("user", [{"functionResponse": {
                    "name": msg.name or call_names.get(msg.tool_call_id or "", ""),
                    "response": _function_response_body(msg.text),
                }}])
                continue

            parts: List[Dict[str, Any]] = []
            if msg.reasoning and msg.role is Role.ASSISTANT:
                parts.append({"text": msg.reasoning, "thought": True})
            for part in msg.content_parts:
                if isinstance(part, TextPart):
                    if part.text:
                        parts.append({"text": part.text})
                elif isinstance(part, ImagePart):
                    media_type, data = parse_data_uri(part.url)
                    if data is not None:
                        parts.append({"inlineData": {"mimeType": media_type or part.media_type or "image/png", "data": data}})
                    else:
                        parts.append({"fileData": {"mimeType": part.media_type or "image/png", "fileUri": part.url}})
                elif isinstance(part, AudioPart):
                    parts.append({"inlineData": {"mimeType": f"audio/{part.format or 'wav'}", "data": part.data}})
                elif isinstance(part, FilePart):
                    if part.data:
                        parts.append({"inlineData": {"mimeType": part.media_type or "application/octet-stream", "data": part.data}})
                    elif part.url:
                        parts.append({"fileData": {"mimeType": part.media_type or "application/octet-stream", "fileUri": part.url}})
            for tc in msg.tool_calls:
                call_names[tc.id] = tc.name
                parts.append({"functionCall": {"name": tc.name, "args": tc.parsed_arguments()}})
            if parts:
                append("model" if msg.role is Role.ASSISTANT else "user", parts)

        body: Dict[str, Any] = {"model": request.model, "contents": contents}
        if request.system:
            body["systemInstruction"] = {"parts": [{"text": request.system}]}

        generation: Dict[str, Any] = {}
        if request.max_tokens is not None:
            generation["maxOutputTokens"] = request.max_tokens
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.top_p is not None:
            generation["topP"] = request.top_p
        if request.stop:
            generation["stopSequences"] = list(request.stop)
        thinking = reasoning_to_gemini(request.reasoning)
        if thinking:
            generation["thinkingConfig"] = thinking
        if generation:
            body["generationConfig"] = generation

        if request.tools:
            body["tools"] = [{"functionDeclarations": [
                {"name": t.name, "description": t.description, "parameters": t.parameters}
                for t in request.tools
            ]}]
        tool_config = self._tool_choice_from_canonical(request.tool_choice)
        if tool_config:
            body["toolConfig"] = tool_config
        return body

    # ====================== 非流式响应 ======================

    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        native = unwrap_response(native)
        candidates = require(native, "candidates", self.protocol)
        if not isinstance(candidates, list) or not candidates:
            raise ConversionError("gemini response has no candidates")

        candidate = candidates[0]
        texts: List[str] = []
        reasoning: List[str] = []
        tool_calls: List[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"]
                tool_calls.append(ToolCall(id=call.get("id") or _call_id(), name=call.get("name", ""),
                                           arguments=dump_json(call.get("args") or {})))
            elif part.get("thought"):
                reasoning.append(part.get("text", ""))
            elif "text" in part:
                texts.append(part["text"])

        finish_reason = FINISH_REASONS.get(candidate.get("finishReason"), "stop")
        if tool_calls and finish_reason == "stop":
            finish_reason = "tool_calls"

        return CanonicalResponse(
            model=native.get("modelVersion", ""),
            id=native.get("responseId") or new_id("resp_"),
            text="".join(texts),
            reasoning="".join(reasoning) or None,
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=_usage(native.get("usageMetadata")) or Usage(),
        )

    def _candidate_parts(self, reasoning: Optional[str], text: str, tool_calls: List[ToolCall]) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        if reasoning:
            parts.append({"text": reasoning, "thought": True})
        if text:
            parts.append({"text": text})
        for tc in tool_calls:
            parts.append({"functionCall": {"name": tc.name, "args": tc.parsed_arguments()}})
        return parts

    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        return {
            "candidates": [{
                "content": {"role": "model", "parts": self._candidate_parts(response.reasoning, response.text, response.tool_calls)},
                "finishReason": _FINISH_TO_GEMINI.get(response.finish_reason, "STOP"),
                "index": 0,
            }],
            "usageMetadata": {
                "promptTokenCount": response.usage.input_tokens,
                "candidatesTokenCount": response.usage.output_tokens,
                "totalTokenCount": response.usage.total_tokens,
            },
            "modelVersion": response.model,
            "responseId": response.id,
        }

    # ====================== 流式 ======================

    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        native_chunk = unwrap_response(native_chunk)
        if "error" in native_chunk:
            error = native_chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return [CanonicalChunk.failure(ProtocolError(f"Upstream stream error: {message}", provider_type=self.protocol.value))]

        chunks: List[CanonicalChunk] = []
        usage = _usage(native_chunk.get("usageMetadata"))
        if usage is not None:
            chunks.append(CanonicalChunk(ChunkKind.USAGE, usage=usage))

        candidates = native_chunk.get("candidates")
        if not candidates:
            block_reason = (native_chunk.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                state.finish_reason = "content_filter"
            return chunks

        candidate = candidates[0]
        content_chunks: List[CanonicalChunk] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                call = part["functionCall"]
                tool_index = state.scratch.get("tool_count", 0)
                state.scratch["tool_count"] = tool_index + 1
                content_chunks.append(CanonicalChunk.tool_call(
                    tool_index, call.get("id") or _call_id(), call.get("name", ""), dump_json(call.get("args") or {}),
                ))
            elif part.get("thought"):
                if part.get("text"):
                    content_chunks.append(CanonicalChunk.reasoning_delta(part["text"]))
            elif part.get("text"):
                content_chunks.append(CanonicalChunk.text_delta(part["text"]))

        if candidate.get("finishReason"):
            state.finish_reason = FINISH_REASONS.get(candidate["finishReason"], "stop")
        return content_chunks + chunks

    def _client_event(self, state: StreamState, parts: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "candidates": [{"content": {"role": "model", "parts": parts}, "index": 0}],
            "modelVersion": state.model,
        }

    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        if chunk.is_opaque_reasoning:
            return []
        pending: Dict[int, Dict[str, Any]] = state.scratch.setdefault("pending_calls", {})

        if chunk.kind is ChunkKind.TEXT:
            return [self._client_event(state, [{"text": chunk.text}])]
        if chunk.kind is ChunkKind.REASONING:
            return [self._client_event(state, [{"text": chunk.text, "thought": True}])]
        if chunk.kind is ChunkKind.TOOL_CALL:
            # Gemini 的 functionCall 必须完整输出，参数片段先累积
            call = pending.setdefault(chunk.index, {"name": "", "arguments": ""})
            if chunk.tool_name:
                call["name"] = chunk.tool_name
            call["arguments"] += chunk.arguments_delta
            return []
        if chunk.kind is ChunkKind.USAGE:
            if chunk.usage is not None:
                state.usage = chunk.usage
            return []
        if chunk.kind is ChunkKind.TERMINAL:
            usage = chunk.usage or state.usage
            calls = [ToolCall(id="", name=c["name"], arguments=c["arguments"] or "{}")
                     for _, c in sorted(pending.items())]
            event = self._client_event(state, self._candidate_parts(None, "", calls) or [{"text": ""}])
            event["candidates"][0]["finishReason"] = _FINISH_TO_GEMINI.get(chunk.finish_reason, "STOP")
            event["usageMetadata"] = {
                "promptTokenCount": usage.input_tokens,
                "candidatesTokenCount": usage.output_tokens,
                "totalTokenCount": usage.total_tokens,
            }
            state.mark_terminal()
            return [event]
        if chunk.kind is ChunkKind.ERROR:
            state.mark_errored()
            error = chunk.error
            return [{"error": {
                "code": getattr(error, "http_status", 500),
                "message": getattr(error, "message", str(error)),
                "status": getattr(error, "kind", "relay_error").upper(),
            }}]
        return []

    def to_client_error(self, error) -> tuple:
        return error.http_status, {
            "error": {
                "code": error.http_status,
                "message": error.message,
                "status": error.kind.upper(),
            }
        }
