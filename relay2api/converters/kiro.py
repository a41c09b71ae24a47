"""
Kiro (IDE 助手) 协议转换器

请求: conversationState
    {
      "conversationState": {
        "chatTriggerType": "MANUAL",
        "conversationId": "...",
        "currentMessage": {"userInputMessage": {...}},
        "history": [{"userInputMessage": {...}}, {"assistantResponseMessage": {...}}, ...]
      }
    }

响应: 事件帧序列
    {"content": "..."}                                   文本增量（推理以内联 <thinking> 标签出现）
    {"name": ..., "toolUseId": ..., "input": "...", "stop": bool}   工具调用片段

非流式响应的 native 形式为 {"events": [帧, ...]}（由提供商客户端聚合）。
推理内容由 ThinkingTagParser 从文本中还原，流式与非流式共用同一套规则。
"""

import json
import uuid
from typing import Any, Dict, List, Optional

from ..errors import ConversionError, ProtocolError
from ..models import (
    CanonicalChunk,
    CanonicalMessage,
    CanonicalRequest,
    CanonicalResponse,
    ChunkKind,
    ImagePart,
    Protocol,
    Role,
    StreamState,
    TextPart,
    ToolCall,
    ToolDefinition,
    ensure_json_text,
    new_id,
)
from ..reasoning import DEFAULT_EFFORT_BUDGET, EFFORT_BUDGETS
from ..thinking_parser import CLOSE_TAG, OPEN_TAG, ThinkingTagParser, split_thinking_text
from .base import ProtocolConverter, parse_data_uri

__all__ = ["KiroConverter", "MODEL_MAPPING", "resolve_kiro_model"]

MODEL_MAPPING: Dict[str, str] = {
    "claude-opus-4-5": "claude-opus-4.5",
    "claude-opus-4-5-20251101": "claude-opus-4.5",
    "claude-haiku-4-5": "claude-haiku-4.5",
    "claude-sonnet-4-5": "CLAUDE_SONNET_4_5_20250929_V1_0",
    "claude-sonnet-4-5-20250929": "CLAUDE_SONNET_4_5_20250929_V1_0",
    "claude-sonnet-4-20250514": "CLAUDE_SONNET_4_20250514_V1_0",
    "claude-3-7-sonnet-20250219": "CLAUDE_3_7_SONNET_20250219_V1_0",
}
DEFAULT_MODEL = "claude-sonnet-4-5"

ORIGIN = "AI_EDITOR"
TOOL_RESULTS_CONTENT = "Tool results provided."
CONTINUE_CONTENT = "Continue"


def resolve_kiro_model(model: str) -> str:
    return MODEL_MAPPING.get(model) or MODEL_MAPPING.get(DEFAULT_MODEL)


def _thinking_prefix(request: CanonicalRequest) -> str:
    """Kiro 没有 thinking 参数，通过系统提示中的标记开启"""
    reasoning = request.reasoning
    if reasoning is None:
        return ""
    budget = reasoning.budget_tokens
    if budget is None:
        budget = EFFORT_BUDGETS.get(reasoning.effort_level, DEFAULT_EFFORT_BUDGET)
    return f"<thinking_mode>enabled</thinking_mode><max_thinking_length>{budget}</max_thinking_length>"


def _images(parts: List[Any]) -> List[Dict[str, Any]]:
    images = []
    for part in parts:
        if isinstance(part, ImagePart):
            media_type, data = parse_data_uri(part.url)
            if data is not None:
                images.append({"format": (media_type or "image/png").split("/", 1)[1], "source": {"bytes": data}})
    return images


def encode_reasoning_text(reasoning: Optional[str], text: str) -> str:
    """reasoning + 可见文本 → 带内联 <thinking> 标签的 Kiro 文本"""
    if not reasoning:
        return text
    if not text:
        return f"{OPEN_TAG}{reasoning}{CLOSE_TAG}"
    return f"{OPEN_TAG}{reasoning}{CLOSE_TAG}\n\n{text}"


class KiroConverter(ProtocolConverter):
    protocol = Protocol.KIRO

    # ====================== 请求 ======================

    def _user_input(self, request: CanonicalRequest, content: str, images: List[Dict[str, Any]],
                    tool_results: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "content": content,
            "modelId": resolve_kiro_model(request.model),
            "origin": ORIGIN,
        }
        if images:
            message["images"] = images
        context: Dict[str, Any] = {}
        if tool_results:
            context["toolResults"] = tool_results
        if tools:
            context["tools"] = tools
        if context:
            message["userInputMessageContext"] = context
        return {"userInputMessage": message}

    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        # 将消息分组为交替的 user / assistant 回合
        turns: List[Dict[str, Any]] = []
        for msg in request.messages:
            if msg.role is Role.ASSISTANT:
                turn = {"role": "assistant", "text": [], "tool_uses": []}
                if turns and turns[-1]["role"] == "assistant":
                    turn = turns[-1]
                else:
                    turns.append(turn)
                if msg.text:
                    turn["text"].append(msg.text)
                turn["tool_uses"].extend(
                    {"toolUseId": tc.id, "name": tc.name, "input": tc.parsed_arguments()} for tc in msg.tool_calls
                )
                continue

            if turns and turns[-1]["role"] == "user":
                turn = turns[-1]
            else:
                turn = {"role": "user", "text": [], "images": [], "tool_results": []}
                turns.append(turn)
            if msg.role is Role.TOOL:
                turn["tool_results"].append({
                    "toolUseId": msg.tool_call_id,
                    "content": [{"text": msg.text}],
                    "status": "success",
                })
            else:
                if msg.text:
                    turn["text"].append(msg.text)
                turn["images"].extend(_images(msg.content_parts))

        if not turns or turns[-1]["role"] != "user":
            turns.append({"role": "user", "text": [CONTINUE_CONTENT], "images": [], "tool_results": []})

        # 系统提示（及 thinking 标记）并入第一个 user 回合
        prefix = "\n\n".join(p for p in (_thinking_prefix(request), request.system or "") if p)
        first_user = next(t for t in turns if t["role"] == "user")
        if prefix:
            first_user["text"].insert(0, prefix)

        tools = [
            {"toolSpecification": {
                "name": t.name,
                "description": t.description or t.name,
                "inputSchema": {"json": t.parameters},
            }}
            for t in request.tools
        ]

        history: List[Dict[str, Any]] = []
        for turn in turns[:-1]:
            if turn["role"] == "assistant":
                entry: Dict[str, Any] = {"content": "\n\n".join(turn["text"])}
                if turn["tool_uses"]:
                    entry["toolUses"] = turn["tool_uses"]
                history.append({"assistantResponseMessage": entry})
            else:
                content = "\n\n".join(turn["text"]) or (TOOL_RESULTS_CONTENT if turn["tool_results"] else CONTINUE_CONTENT)
                history.append(self._user_input(request, content, turn["images"], turn["tool_results"]))

        last = turns[-1]
        content = "\n\n".join(last["text"]) or (TOOL_RESULTS_CONTENT if last["tool_results"] else CONTINUE_CONTENT)
        current = self._user_input(request, content, last["images"], last["tool_results"], tools)

        state: Dict[str, Any] = {
            "chatTriggerType": "MANUAL",
            "conversationId": str(uuid.uuid4()),
            "currentMessage": current,
        }
        if history:
            state["history"] = history
        return {"model": request.model, "stream": request.stream, "conversationState": state}

    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        if not isinstance(native, dict):
            raise ConversionError("kiro payload must be an object", status_code=400)
        state = native.get("conversationState")
        if not isinstance(state, dict):
            raise ConversionError("kiro payload missing 'conversationState'", status_code=400)
        current = (state.get("currentMessage") or {}).get("userInputMessage")
        if not isinstance(current, dict):
            raise ConversionError("kiro payload missing currentMessage.userInputMessage", status_code=400)

        messages: List[CanonicalMessage] = []

        def add_user(entry: Dict[str, Any]) -> None:
            context = entry.get("userInputMessageContext") or {}
            for result in context.get("toolResults") or []:
                text = "".join(c.get("text", "") for c in result.get("content") or [] if isinstance(c, dict))
                messages.append(CanonicalMessage(Role.TOOL, [TextPart(text)], tool_call_id=result.get("toolUseId")))
            content = entry.get("content", "")
            if content and content not in (TOOL_RESULTS_CONTENT, CONTINUE_CONTENT):
                messages.append(CanonicalMessage.from_text(Role.USER, content))

        for item in state.get("history") or []:
            if "userInputMessage" in item:
                add_user(item["userInputMessage"])
            elif "assistantResponseMessage" in item:
                entry = item["assistantResponseMessage"]
                segments = split_thinking_text(entry.get("content", ""))
                messages.append(CanonicalMessage(
                    Role.ASSISTANT,
                    [TextPart(s.content) for s in segments if not s.is_thinking],
                    tool_calls=[
                        ToolCall(id=t.get("toolUseId") or new_id("tooluse_"), name=t.get("name", ""),
                                 arguments=ensure_json_text(t.get("input")))
                        for t in entry.get("toolUses") or []
                    ],
                    reasoning="".join(s.content for s in segments if s.is_thinking) or None,
                ))
        add_user(current)

        tools = [
            ToolDefinition(
                name=spec.get("name", ""),
                description=spec.get("description", ""),
                parameters=(spec.get("inputSchema") or {}).get("json") or {"type": "object", "properties": {}},
            )
            for spec in (t.get("toolSpecification") or {} for t in (current.get("userInputMessageContext") or {}).get("tools") or [])
        ]

        return CanonicalRequest(
            model=native.get("model") or current.get("modelId", DEFAULT_MODEL),
            messages=messages,
            tools=tools,
            stream=bool(native.get("stream", False)),
        )

    # ====================== 非流式响应 ======================

    @staticmethod
    def _collect_tool_uses(events: List[Dict[str, Any]]) -> List[ToolCall]:
        calls: Dict[str, Dict[str, Any]] = {}
        order: List[str] = []
        current: Optional[str] = None
        for event in events:
            if "name" not in event and "toolUseId" not in event and "input" not in event:
                continue
            tool_id = event.get("toolUseId") or current
            if tool_id is None:
                continue
            if tool_id not in calls:
                calls[tool_id] = {"name": event.get("name", ""), "input": ""}
                order.append(tool_id)
            current = tool_id
            if event.get("name"):
                calls[tool_id]["name"] = event["name"]
            fragment = event.get("input")
            if isinstance(fragment, str):
                calls[tool_id]["input"] += fragment
            elif fragment is not None:
                calls[tool_id]["input"] += json.dumps(fragment, ensure_ascii=False, separators=(",", ":"))
        return [ToolCall(id=tid, name=calls[tid]["name"], arguments=ensure_json_text(calls[tid]["input"])) for tid in order]

    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        if not isinstance(native, dict) or not isinstance(native.get("events"), list):
            raise ConversionError("kiro response must carry an 'events' list")
        events = [e for e in native["events"] if isinstance(e, dict)]

        text = "".join(e["content"] for e in events if isinstance(e.get("content"), str))
        segments = split_thinking_text(text)
        tool_calls = self._collect_tool_uses(events)

        return CanonicalResponse(
            model=native.get("model", ""),
            id=native.get("id") or new_id("msg_"),
            text="".join(s.content for s in segments if not s.is_thinking),
            reasoning="".join(s.content for s in segments if s.is_thinking) or None,
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
        )

    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        events: List[Dict[str, Any]] = []
        content = encode_reasoning_text(response.reasoning, response.text)
        if content:
            events.append({"content": content})
        for tc in response.tool_calls:
            events.append({"name": tc.name, "toolUseId": tc.id, "input": tc.arguments})
            events.append({"name": tc.name, "toolUseId": tc.id, "stop": True})
        return {"model": response.model, "id": response.id, "events": events}

    # ====================== 流式 ======================

    def _parser(self, state: StreamState) -> ThinkingTagParser:
        parser = state.scratch.get("parser")
        if parser is None:
            parser = ThinkingTagParser(emit_partial=True)
            state.scratch["parser"] = parser
        return parser

    @staticmethod
    def _segments_to_chunks(segments) -> List[CanonicalChunk]:
        return [
            CanonicalChunk.reasoning_delta(s.content) if s.is_thinking else CanonicalChunk.text_delta(s.content)
            for s in segments
        ]

    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        if "error" in native_chunk or "__type" in native_chunk:
            message = native_chunk.get("message") or native_chunk.get("error") or native_chunk.get("__type")
            return [CanonicalChunk.failure(ProtocolError(f"Upstream stream error: {message}", provider_type=self.protocol.value))]

        content = native_chunk.get("content")
        if isinstance(content, str):
            return self._segments_to_chunks(self._parser(state).feed(content))

        if "name" in native_chunk or "toolUseId" in native_chunk or "input" in native_chunk:
            tools: Dict[str, int] = state.scratch.setdefault("tool_indexes", {})
            tool_id = native_chunk.get("toolUseId") or state.scratch.get("current_tool")
            if tool_id is None:
                raise KeyError("toolUseId")
            fragment = native_chunk.get("input")
            if fragment is not None and not isinstance(fragment, str):
                fragment = json.dumps(fragment, ensure_ascii=False, separators=(",", ":"))
            state.scratch["current_tool"] = tool_id
            if tool_id not in tools:
                tools[tool_id] = len(tools)
                return [CanonicalChunk.tool_call(tools[tool_id], tool_id, native_chunk.get("name", ""), fragment or "")]
            if fragment:
                return [CanonicalChunk.tool_call(tools[tool_id], None, None, fragment)]
            return []

        # followupPrompt / contextUsagePercentage / 计量帧
        return []

    def _flush(self, state: StreamState) -> List[CanonicalChunk]:
        parser = state.scratch.get("parser")
        if parser is None:
            return []
        return self._segments_to_chunks(parser.finish())

    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        if chunk.is_opaque_reasoning:
            return []
        scratch = state.scratch
        if chunk.kind is ChunkKind.REASONING:
            prefix = "" if scratch.get("in_thinking") else OPEN_TAG
            scratch["in_thinking"] = True
            return [{"content": prefix + chunk.text}]
        if chunk.kind is ChunkKind.TEXT:
            prefix = ""
            if scratch.get("in_thinking"):
                prefix = CLOSE_TAG + "\n\n"
                scratch["in_thinking"] = False
            return [{"content": prefix + chunk.text}]
        if chunk.kind is ChunkKind.TOOL_CALL:
            events = []
            if scratch.get("in_thinking"):
                events.append({"content": CLOSE_TAG + "\n\n"})
                scratch["in_thinking"] = False
            ids: Dict[int, str] = scratch.setdefault("tool_ids", {})
            tool_id = ids.setdefault(chunk.index, chunk.tool_call_id or new_id("tooluse_"))
            event: Dict[str, Any] = {"toolUseId": tool_id, "input": chunk.arguments_delta}
            if chunk.tool_name:
                event["name"] = chunk.tool_name
            events.append(event)
            return events
        if chunk.kind is ChunkKind.TERMINAL:
            events = []
            if scratch.get("in_thinking"):
                events.append({"content": CLOSE_TAG})
                scratch["in_thinking"] = False
            for tool_id in (scratch.get("tool_ids") or {}).values():
                events.append({"toolUseId": tool_id, "stop": True})
            state.mark_terminal()
            return events
        if chunk.kind is ChunkKind.ERROR:
            state.mark_errored()
            return [{"error": getattr(chunk.error, "message", str(chunk.error))}]
        return []

    def encode_stream_event(self, event: Dict[str, Any]) -> str:
        return json.dumps(event, ensure_ascii=False, separators=(",", ":")) + "\n"
