"""
流式分帧工具

- SSEParser:    SSE (data: ...) 分块解析，支持跨块行缓冲
- NDJSONParser: 换行分隔 JSON（Grok 会话流，行首可能带 data: 前缀）
- sse_event / sse_data: 输出端 SSE 帧格式化
"""

import codecs
import json
from typing import Any, Dict, List, Optional

from log import log

__all__ = [
    "DONE",
    "SSE_DONE",
    "parse_sse_line",
    "SSEParser",
    "NDJSONParser",
    "sse_event",
    "sse_data",
    "is_done",
]

# 流结束哨兵（[DONE] 行）
DONE: Dict[str, Any] = {"done": True}
SSE_DONE = "data: [DONE]\n\n"


def is_done(event: Any) -> bool:
    return isinstance(event, dict) and event.get("done") is True and len(event) == 1


def _decode_payload(payload: str, source: str) -> Optional[Dict[str, Any]]:
    payload = payload.strip()
    if not payload:
        return None
    if payload == "[DONE]":
        return dict(DONE)
    try:
        value = json.loads(payload)
    except json.JSONDecodeError:
        log.warning(f"Skipping malformed {source} frame: {payload[:120]}", tag="SSE")
        return None
    if not isinstance(value, dict):
        log.warning(f"Skipping non-object {source} frame: {payload[:120]}", tag="SSE")
        return None
    return value


def parse_sse_line(line: str) -> Optional[Dict[str, Any]]:
    """
    解析单行 SSE 数据

    Args:
        line: SSE 格式的行

    Returns:
        解析后的 JSON 对象；[DONE] 返回 DONE 哨兵；非数据行返回 None
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    return _decode_payload(line[5:], "SSE")


class SSEParser:
    """
    SSE 流解析器

    处理分块的 SSE 数据，支持跨块的行缓冲。event: / id: / 注释行被忽略，
    事件类型以 data 中的 type 字段为准。
    """

    def __init__(self):
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk) -> List[Dict[str, Any]]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.buffer += chunk
        events = []

        while "\n" in self.buffer:
            line, self.buffer = self.buffer.split("\n", 1)
            event = parse_sse_line(line)
            if event is not None:
                events.append(event)

        return events

    def flush(self) -> List[Dict[str, Any]]:
        events = []
        if self.buffer.strip():
            event = parse_sse_line(self.buffer)
            if event is not None:
                events.append(event)
        self.buffer = ""
        return events


class NDJSONParser:
    """换行分隔 JSON 流解析器"""

    def __init__(self):
        self.buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def _parse(self, line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        if line.startswith("data:"):
            line = line[5:]
        return _decode_payload(line, "NDJSON")

    def feed(self, chunk) -> List[Dict[str, Any]]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self.buffer += chunk
        events = []
        while "\n" in self.buffer:
            line, self.buffer = self.buffer.split("\n", 1)
            event = self._parse(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[Dict[str, Any]]:
        event = self._parse(self.buffer)
        self.buffer = ""
        return [event] if event is not None else []


def sse_event(event: str, data: Dict[str, Any]) -> str:
    """带事件名的 SSE 帧（Claude / Responses）"""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, separators=(',', ':'))}\n\n"


def sse_data(data: Dict[str, Any]) -> str:
    """仅 data 的 SSE 帧（OpenAI / Gemini）"""
    return f"data: {json.dumps(data, ensure_ascii=False, separators=(',', ':'))}\n\n"
