"""
Canonical 数据模型

所有协议转换器都与这里的提供商无关模型互转：
- CanonicalRequest / CanonicalMessage / ToolCall
- CanonicalResponse（非流式）
- CanonicalChunk + StreamState（流式，显式状态机）
- ConversionContext（单次交换的上下文，仅用于诊断捕获）
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

__all__ = [
    "Protocol",
    "Role",
    "TextPart",
    "ImagePart",
    "AudioPart",
    "FilePart",
    "ContentPart",
    "ToolCall",
    "ToolDefinition",
    "ReasoningBlock",
    "CanonicalMessage",
    "ReasoningConfig",
    "CanonicalRequest",
    "Usage",
    "CanonicalResponse",
    "ChunkKind",
    "CanonicalChunk",
    "StreamPhase",
    "StreamState",
    "ConversionContext",
    "NativeEnvelope",
    "dump_json",
    "ensure_json_text",
    "new_id",
]


class Protocol(str, Enum):
    """网关支持的线协议"""

    OPENAI = "openai"
    OPENAI_RESPONSES = "openai_responses"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROK = "grok"
    KIRO = "kiro"


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def dump_json(value: Any) -> str:
    """确定性 JSON 序列化（保持键插入顺序，紧凑分隔符）"""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def ensure_json_text(value: Any) -> str:
    """
    保证工具参数是合法的 JSON 文本

    - 已经是字符串：原样保留（不重新解析，不改变值类型）
    - None：视为空对象
    - 其他结构：确定性序列化
    """
    if isinstance(value, str):
        return value if value.strip() else "{}"
    if value is None:
        return "{}"
    return dump_json(value)


def new_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:24]}"


# ====================== 内容片段 ======================

@dataclass
class TextPart:
    text: str
    type: str = "text"


@dataclass
class ImagePart:
    """图片引用：url 可以是 http(s) 地址或 data: URI"""
    url: str
    media_type: Optional[str] = None
    type: str = "image"


@dataclass
class AudioPart:
    data: str
    format: Optional[str] = None
    type: str = "audio"


@dataclass
class FilePart:
    data: Optional[str] = None
    url: Optional[str] = None
    filename: Optional[str] = None
    media_type: Optional[str] = None
    type: str = "file"


ContentPart = Union[TextPart, ImagePart, AudioPart, FilePart]


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> Any:
        """解析参数；非法 JSON 时原样包装，保证不丢数据"""
        try:
            return json.loads(self.arguments) if self.arguments else {}
        except json.JSONDecodeError:
            return {"_raw": self.arguments}


@dataclass
class ToolDefinition:
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class ReasoningBlock:
    """
    带签名的推理块（Claude thinking / redacted_thinking）

    signature 与 redacted 对网关是不透明的，需要原样回传给同一提供商。
    """

    text: str = ""
    signature: Optional[str] = None
    redacted: Optional[str] = None

    @property
    def is_redacted(self) -> bool:
        return self.redacted is not None


@dataclass
class CanonicalMessage:
    role: Role
    content_parts: List[ContentPart] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    reasoning: Optional[str] = None
    reasoning_blocks: List[ReasoningBlock] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content_parts if isinstance(p, TextPart))

    @classmethod
    def from_text(cls, role: Role, text: str) -> "CanonicalMessage":
        return cls(role=role, content_parts=[TextPart(text)] if text else [])


@dataclass(frozen=True)
class ReasoningConfig:
    """
    规范化后的推理配置，只有两种形态：
    - mode="enabled",  budget_tokens=int
    - mode="adaptive", effort_level in {low, medium, high}
    """

    mode: str
    budget_tokens: Optional[int] = None
    effort_level: Optional[str] = None

    @classmethod
    def enabled(cls, budget_tokens: int) -> "ReasoningConfig":
        return cls(mode="enabled", budget_tokens=int(budget_tokens))

    @classmethod
    def adaptive(cls, effort_level: str) -> "ReasoningConfig":
        return cls(mode="adaptive", effort_level=effort_level)


@dataclass
class CanonicalRequest:
    model: str
    messages: List[CanonicalMessage] = field(default_factory=list)
    system: Optional[str] = None
    tools: List[ToolDefinition] = field(default_factory=list)
    tool_choice: Optional[Any] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stop: List[str] = field(default_factory=list)
    stream: bool = False
    reasoning: Optional[ReasoningConfig] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CanonicalResponse:
    model: str
    id: str = field(default_factory=lambda: new_id("resp_"))
    text: str = ""
    reasoning: Optional[str] = None
    reasoning_blocks: List[ReasoningBlock] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)
    created: int = field(default_factory=lambda: int(time.time()))


# ====================== 流式 ======================

class ChunkKind(str, Enum):
    TEXT = "text"
    REASONING = "reasoning"
    TOOL_CALL = "tool_call"
    USAGE = "usage"
    TERMINAL = "terminal"
    ERROR = "error"


@dataclass
class CanonicalChunk:
    kind: ChunkKind
    text: str = ""
    index: int = 0
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    arguments_delta: str = ""
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None
    error: Optional[Any] = None
    signature: Optional[str] = None
    redacted: Optional[str] = None

    @classmethod
    def text_delta(cls, text: str) -> "CanonicalChunk":
        return cls(ChunkKind.TEXT, text=text)

    @classmethod
    def reasoning_delta(cls, text: str) -> "CanonicalChunk":
        return cls(ChunkKind.REASONING, text=text)

    @classmethod
    def reasoning_signature(cls, signature: str) -> "CanonicalChunk":
        """当前推理块的签名（跟在推理文本之后）"""
        return cls(ChunkKind.REASONING, signature=signature)

    @classmethod
    def redacted_reasoning(cls, data: str) -> "CanonicalChunk":
        return cls(ChunkKind.REASONING, redacted=data)

    @property
    def is_opaque_reasoning(self) -> bool:
        """只携带签名 / 加密数据、没有可读文本的推理块"""
        return self.kind is ChunkKind.REASONING and not self.text

    @classmethod
    def tool_call(cls, index: int, tool_call_id: Optional[str], name: Optional[str],
                  arguments_delta: str = "") -> "CanonicalChunk":
        return cls(ChunkKind.TOOL_CALL, index=index, tool_call_id=tool_call_id,
                   tool_name=name, arguments_delta=arguments_delta)

    @classmethod
    def terminal(cls, finish_reason: str = "stop", usage: Optional[Usage] = None) -> "CanonicalChunk":
        return cls(ChunkKind.TERMINAL, finish_reason=finish_reason, usage=usage)

    @classmethod
    def failure(cls, error: Any) -> "CanonicalChunk":
        return cls(ChunkKind.ERROR, error=error, finish_reason="error")

    @property
    def is_final(self) -> bool:
        return self.kind in (ChunkKind.TERMINAL, ChunkKind.ERROR)


class StreamPhase(str, Enum):
    STREAMING = "streaming"
    TERMINAL = "terminal"
    ERRORED = "errored"


@dataclass
class StreamState:
    """
    单次流式交换的转换状态

    只被创建它的交换持有；转换器把所有增量状态（thinking 缓冲、
    工具参数片段、客户端格式的 block 计数）放在这里而不是转换器实例上。
    """

    model: str = ""
    message_id: str = field(default_factory=lambda: new_id("msg_"))
    phase: StreamPhase = StreamPhase.STREAMING
    finish_reason: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    saw_tool_call: bool = False
    started: bool = False
    # 协议私有的增量状态
    scratch: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.phase is StreamPhase.STREAMING

    @property
    def terminal_emitted(self) -> bool:
        return self.phase is not StreamPhase.STREAMING

    def mark_terminal(self) -> None:
        if self.phase is StreamPhase.STREAMING:
            self.phase = StreamPhase.TERMINAL

    def mark_errored(self) -> None:
        self.phase = StreamPhase.ERRORED


@dataclass
class ConversionContext:
    """单次请求/响应交换的上下文"""

    source: Protocol
    target: Protocol
    model: str
    stream: bool = False
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    # 仅供诊断捕获使用，不影响转换结果
    captured_native: List[Any] = field(default_factory=list)
    captured_converted: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class NativeEnvelope:
    """带协议标签的原生报文，转换器按标签分派而不是探测字段"""

    protocol: Protocol
    body: Any
