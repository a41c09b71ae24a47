"""
Grok 浏览器会话协议转换器

Grok 网页接口只接受一段扁平化的 message 文本：
- 历史消息按 "role: text" 逐条拼接，最后一条 user 消息不带前缀
- 工具调用轨迹写成 "[tool_call] name args"
- 工具结果的角色写成 "tool[name]#call_id"
- 提供 tools 时在最前面注入工具说明

响应流是 NDJSON: {"result": {"response": {"token", "isThinking", "modelResponse", "isDone"}}}
"""

import json
import re
from typing import Any, Dict, List, Tuple

from log import log

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
    new_id,
)
from .base import ProtocolConverter

__all__ = ["GrokConverter", "MODEL_MAPPING", "resolve_grok_model"]

# 对外模型名 → (modelName, modelMode)
MODEL_MAPPING: Dict[str, Tuple[str, str]] = {
    "grok-3": ("grok-3", "MODEL_MODE_GROK_3"),
    "grok-3-mini": ("grok-3", "MODEL_MODE_GROK_3_MINI_THINKING"),
    "grok-3-thinking": ("grok-3", "MODEL_MODE_GROK_3_THINKING"),
    "grok-4": ("grok-4", "MODEL_MODE_GROK_4"),
    "grok-4-mini": ("grok-4-mini", "MODEL_MODE_GROK_4_MINI_THINKING"),
    "grok-4-thinking": ("grok-4", "MODEL_MODE_GROK_4_THINKING"),
    "grok-4-heavy": ("grok-4", "MODEL_MODE_HEAVY"),
    "grok-4.1-mini": ("grok-4-1-thinking-1129", "MODEL_MODE_GROK_4_1_MINI_THINKING"),
    "grok-4.1-fast": ("grok-4-1-thinking-1129", "MODEL_MODE_FAST"),
    "grok-4.1-expert": ("grok-4-1-thinking-1129", "MODEL_MODE_EXPERT"),
    "grok-4.1-thinking": ("grok-4-1-thinking-1129", "MODEL_MODE_GROK_4_1_THINKING"),
    "grok-4.20-beta": ("grok-420", "MODEL_MODE_GROK_420"),
}
DEFAULT_MODEL = "grok-3"

ATTACHMENT_FALLBACK_MESSAGE = "Refer to the following content:"

_TOOL_CALL_LINE = re.compile(r"^\[tool_call\]\s+(\S+)\s*(.*)$")


def resolve_grok_model(model: str) -> Tuple[str, str]:
    return MODEL_MAPPING.get(model) or MODEL_MAPPING[DEFAULT_MODEL]


def format_tool_call(tool_call: ToolCall) -> str:
    return f"[tool_call] {tool_call.name} {tool_call.arguments.strip()}".strip()


def _build_tool_prompt(request: CanonicalRequest) -> str:
    if not request.tools:
        return ""
    lines = [
        "You can call the following tools. To call a tool, reply with one line per call in the form:",
        "[tool_call] <tool_name> <JSON arguments>",
        "",
        "Tools:",
    ]
    for tool in request.tools:
        lines.append(json.dumps(
            {"name": tool.name, "description": tool.description, "parameters": tool.parameters},
            ensure_ascii=False,
        ))
    if isinstance(request.tool_choice, dict) and request.tool_choice.get("name"):
        lines.append(f"You must call the tool {request.tool_choice['name']}.")
    elif request.tool_choice == "required":
        lines.append("You must call at least one tool.")
    return "\n".join(lines)


def split_tool_calls(text: str) -> Tuple[str, List[ToolCall]]:
    """从最终文本中拆出 [tool_call] 行"""
    kept: List[str] = []
    calls: List[ToolCall] = []
    for line in text.split("\n"):
        match = _TOOL_CALL_LINE.match(line.strip())
        if match:
            args = match.group(2).strip() or "{}"
            try:
                json.loads(args)
            except json.JSONDecodeError:
                kept.append(line)
                continue
            calls.append(ToolCall(id=new_id("call_"), name=match.group(1), arguments=args))
        else:
            kept.append(line)
    if not calls:
        return text, []
    return "\n".join(kept).strip(), calls


class GrokConverter(ProtocolConverter):
    protocol = Protocol.GROK

    # ====================== 请求 ======================

    def flatten_messages(self, request: CanonicalRequest) -> str:
        extracted: List[Tuple[str, str]] = []
        call_names: Dict[str, str] = {}
        has_attachments = False

        if request.system:
            extracted.append(("system", request.system.strip()))

        for msg in request.messages:
            parts = [p.text.strip() for p in msg.content_parts if isinstance(p, TextPart) and p.text.strip()]
            has_attachments = has_attachments or any(isinstance(p, ImagePart) for p in msg.content_parts)

            for tc in msg.tool_calls:
                call_names[tc.id] = tc.name
            if msg.role is Role.ASSISTANT and not parts and msg.tool_calls:
                parts = [format_tool_call(tc) for tc in msg.tool_calls]
            if not parts:
                continue

            label = msg.role.value
            if msg.role is Role.TOOL:
                name = (msg.name or call_names.get(msg.tool_call_id or "", "") or "unknown").strip()
                label = f"tool[{name}]"
                if msg.tool_call_id:
                    label += f"#{msg.tool_call_id.strip()}"
            extracted.append((label, "\n".join(parts)))

        last_user = max((i for i, (role, _) in enumerate(extracted) if role == "user"), default=-1)
        texts = [text if i == last_user else f"{role}: {text}" for i, (role, text) in enumerate(extracted)]
        message = "\n\n".join(texts)

        tool_prompt = _build_tool_prompt(request)
        if tool_prompt:
            message = f"{tool_prompt}\n\n{message}"
        if not message.strip() and has_attachments:
            message = ATTACHMENT_FALLBACK_MESSAGE
        return message

    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        model_name, model_mode = resolve_grok_model(request.model)
        if request.model not in MODEL_MAPPING:
            log.debug(f"Unknown grok model {request.model!r}, using {DEFAULT_MODEL}", tag="GROK")
        return {
            "model": request.model,
            "message": self.flatten_messages(request),
            "modelName": model_name,
            "modelMode": model_mode,
            "temporary": True,
            "disableMemory": False,
            "disableSearch": False,
            "enableImageGeneration": True,
            "fileAttachments": [],
            "imageAttachments": [],
            "isReasoning": False,
            "returnImageBytes": False,
            "sendFinalMetadata": True,
            "toolOverrides": {},
            "responseMetadata": {"requestModelDetails": {"modelId": model_name}},
        }

    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        if not isinstance(native, dict) or not isinstance(native.get("message"), str):
            raise ConversionError("grok payload missing 'message'", status_code=400)
        return CanonicalRequest(
            model=native.get("model") or native.get("modelName", DEFAULT_MODEL),
            messages=[CanonicalMessage.from_text(Role.USER, native["message"])],
        )

    # ====================== 非流式响应 ======================

    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        if not isinstance(native, dict):
            raise ConversionError("grok response must be an object")
        response = (native.get("result") or {}).get("response") or native
        model_response = response.get("modelResponse") or {}
        text = model_response.get("message")
        if text is None:
            text = response.get("message")
        if text is None:
            raise ConversionError("grok response has neither modelResponse.message nor message")

        text, tool_calls = split_tool_calls(text)
        return CanonicalResponse(
            model=native.get("model", ""),
            id=response.get("responseId") or new_id("resp_"),
            text=text,
            reasoning=response.get("thinking") or None,
            tool_calls=tool_calls,
            finish_reason="tool_calls" if tool_calls else "stop",
        )

    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        lines = [response.text] if response.text else []
        lines.extend(format_tool_call(tc) for tc in response.tool_calls)
        message = "\n".join(lines)
        return {
            "model": response.model,
            "message": message,
            "thinking": response.reasoning or "",
            "responseId": response.id,
            "modelResponse": {"message": message, "responseId": response.id},
        }

    # ====================== 流式 ======================

    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        if "error" in native_chunk:
            error = native_chunk["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return [CanonicalChunk.failure(ProtocolError(f"Upstream stream error: {message}", provider_type=self.protocol.value))]

        response = (native_chunk.get("result") or {}).get("response")
        if response is None:
            response = native_chunk
        if not isinstance(response, dict):
            raise TypeError("grok chunk response must be an object")

        chunks: List[CanonicalChunk] = []
        token = response.get("token")
        if isinstance(token, str) and token:
            if response.get("isThinking"):
                chunks.append(CanonicalChunk.reasoning_delta(token))
            else:
                state.scratch["text_seen"] = True
                chunks.append(CanonicalChunk.text_delta(token))

        model_response = response.get("modelResponse")
        if isinstance(model_response, dict) and not state.scratch.get("text_seen"):
            message = model_response.get("message")
            if message:
                state.scratch["text_seen"] = True
                chunks.append(CanonicalChunk.text_delta(message))

        if response.get("isDone"):
            chunks.extend(self._terminate(state))
        return chunks

    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        if chunk.is_opaque_reasoning:
            return []
        pending: Dict[int, Dict[str, Any]] = state.scratch.setdefault("pending_calls", {})

        def frame(**fields: Any) -> Dict[str, Any]:
            return {"result": {"response": {"responseId": state.message_id, **fields}}}

        if chunk.kind is ChunkKind.TEXT:
            return [frame(token=chunk.text, isThinking=False)]
        if chunk.kind is ChunkKind.REASONING:
            return [frame(token=chunk.text, isThinking=True)]
        if chunk.kind is ChunkKind.TOOL_CALL:
            call = pending.setdefault(chunk.index, {"name": "", "arguments": ""})
            if chunk.tool_name:
                call["name"] = chunk.tool_name
            call["arguments"] += chunk.arguments_delta
            return []
        if chunk.kind is ChunkKind.TERMINAL:
            frames = [
                frame(token="\n" + format_tool_call(ToolCall(id="", name=c["name"], arguments=c["arguments"] or "{}")),
                      isThinking=False)
                for _, c in sorted(pending.items())
            ]
            frames.append(frame(isDone=True))
            state.mark_terminal()
            return frames
        if chunk.kind is ChunkKind.ERROR:
            state.mark_errored()
            return [{"error": {"message": getattr(chunk.error, "message", str(chunk.error))}}]
        return []

    def encode_stream_event(self, event: Dict[str, Any]) -> str:
        return json.dumps(event, ensure_ascii=False, separators=(",", ":")) + "\n"
