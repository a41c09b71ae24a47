"""
协议转换器基类

每个协议实现一个 ProtocolConverter，负责本协议 <-> canonical 的双向转换：
请求、非流式响应、流式块。跨协议转换由 ConverterRegistry 组合两个转换器完成
（source → canonical → target），不存在两两直连的转换器。

流式约定：
- 所有增量状态保存在 StreamState.scratch 中，转换器实例本身无状态，可并发共享
- next_canonical_chunks 对畸形块只记日志并跳过，不中断流
- 每个流恰好一个终止块（terminal 或 error）；之后的输入被忽略
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from log import log

from ..errors import ConversionError, RelayError
from ..models import (
    CanonicalChunk,
    CanonicalRequest,
    CanonicalResponse,
    ChunkKind,
    ConversionContext,
    Protocol,
    StreamState,
    Usage,
)
from ..sse import sse_data

__all__ = [
    "ProtocolConverter",
    "parse_data_uri",
    "build_data_uri",
    "require",
]

# 解析 native 块时可能出现的结构性错误
MALFORMED_ERRORS = (KeyError, TypeError, ValueError, AttributeError, IndexError)


def require(body: Any, key: str, protocol: Protocol, status_code: Optional[int] = None) -> Any:
    """取必需字段，缺失时抛出 ConversionError"""
    if not isinstance(body, dict):
        raise ConversionError(
            f"{protocol.value} payload must be an object, got {type(body).__name__}",
            status_code=status_code,
        )
    if key not in body or body[key] is None:
        raise ConversionError(
            f"{protocol.value} payload missing required field '{key}'",
            status_code=status_code,
        )
    return body[key]


def parse_data_uri(url: str) -> Tuple[Optional[str], Optional[str]]:
    """
    解析 data:<media>;base64,<data>

    Returns:
        (media_type, base64_data)；不是 data URI 时返回 (None, None)
    """
    if not isinstance(url, str) or not url.startswith("data:") or "," not in url:
        return None, None
    header, data = url[5:].split(",", 1)
    media_type = header.split(";", 1)[0] or None
    return media_type, data


def build_data_uri(media_type: Optional[str], data: str) -> str:
    return f"data:{media_type or 'application/octet-stream'};base64,{data}"


class ProtocolConverter(ABC):
    """协议转换器接口"""

    protocol: Protocol

    # ------------------------------------------------------------------
    # 请求 / 非流式响应
    # ------------------------------------------------------------------

    @abstractmethod
    def to_canonical_request(self, native: Dict[str, Any]) -> CanonicalRequest:
        ...

    @abstractmethod
    def from_canonical_request(self, request: CanonicalRequest) -> Dict[str, Any]:
        ...

    @abstractmethod
    def to_canonical_response(self, native: Dict[str, Any]) -> CanonicalResponse:
        ...

    @abstractmethod
    def from_canonical_response(self, response: CanonicalResponse) -> Dict[str, Any]:
        ...

    # ------------------------------------------------------------------
    # 流式
    # ------------------------------------------------------------------

    def new_stream_state(self, ctx: Optional[ConversionContext] = None) -> StreamState:
        return StreamState(model=ctx.model if ctx else "")

    def next_canonical_chunks(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        """
        native 流式块 → canonical 块

        终止块之后的输入全部忽略；畸形块记录日志后跳过。
        """
        if state.terminal_emitted:
            return []
        try:
            chunks = self._chunk_to_canonical(native_chunk, state)
        except MALFORMED_ERRORS as e:
            log.warning(
                f"Skipping malformed {self.protocol.value} chunk: {type(e).__name__}: {e}",
                tag="CONVERTER",
            )
            return []
        return self._seal(chunks, state)

    def finish_stream(self, state: StreamState) -> List[CanonicalChunk]:
        """流结束：刷新缓冲内容，必要时补发唯一的终止块"""
        if state.terminal_emitted:
            return []
        return self._seal(self._terminate(state), state)

    @abstractmethod
    def _chunk_to_canonical(self, native_chunk: Any, state: StreamState) -> List[CanonicalChunk]:
        ...

    def _flush(self, state: StreamState) -> List[CanonicalChunk]:
        """刷新协议私有缓冲（如 thinking 解析器、工具参数片段）"""
        return []

    def _terminate(self, state: StreamState, finish_reason: Optional[str] = None,
                   usage: Optional[Usage] = None) -> List[CanonicalChunk]:
        chunks = self._flush(state)
        if usage is not None:
            state.usage = usage
        reason = finish_reason or state.finish_reason
        if reason is None:
            reason = "tool_calls" if state.saw_tool_call else "stop"
        elif reason == "stop" and state.saw_tool_call:
            reason = "tool_calls"
        chunks.append(CanonicalChunk.terminal(reason, state.usage))
        return chunks

    def _seal(self, chunks: List[CanonicalChunk], state: StreamState) -> List[CanonicalChunk]:
        sealed: List[CanonicalChunk] = []
        for chunk in chunks:
            if state.terminal_emitted:
                break
            if chunk.kind is ChunkKind.TOOL_CALL:
                state.saw_tool_call = True
            elif chunk.kind is ChunkKind.USAGE and chunk.usage is not None:
                state.usage = chunk.usage
            elif chunk.kind is ChunkKind.TERMINAL:
                state.finish_reason = chunk.finish_reason
                state.mark_terminal()
            elif chunk.kind is ChunkKind.ERROR:
                state.mark_errored()
            sealed.append(chunk)
        return sealed

    # ------------------------------------------------------------------
    # 客户端输出
    # ------------------------------------------------------------------

    @abstractmethod
    def from_canonical_chunk(self, chunk: CanonicalChunk, state: StreamState) -> List[Dict[str, Any]]:
        """canonical 块 → 本协议的客户端流式事件（可能为 0 个或多个）"""
        ...

    def encode_stream_event(self, event: Dict[str, Any]) -> str:
        return sse_data(event)

    def stream_done_marker(self) -> Optional[str]:
        return None

    def to_client_error(self, error: RelayError) -> Tuple[int, Dict[str, Any]]:
        status = error.http_status
        return status, {
            "error": {
                "message": error.message,
                "type": error.kind,
                "code": status,
            }
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.protocol.value})"
