"""
诊断捕获与事件观察者

- EventObserver:     池管理事件的观察接口（fire-and-forget），默认空实现
- LoggingObserver:   把事件写入日志的观察者
- DiagnosticCapture: 按交换记录转换前后的请求体、非流式响应和流式块序列；
                     流式块先聚合，终止标记后延迟（默认 2 秒）统一落盘

观察者与捕获只做观测：它们的任何异常都会被记录并吞掉，不影响转换结果。
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional

from log import log

from .models import ConversionContext

__all__ = [
    "EventObserver",
    "LoggingObserver",
    "CaptureRecord",
    "DiagnosticCapture",
    "safe_notify",
]

# 已知事件名
CREDENTIAL_DISABLED = "credential_disabled"
CREDENTIAL_RECOVERED = "credential_recovered"
FALLBACK = "fallback"
POOL_EXHAUSTED = "pool_exhausted"
REFRESH_COMPLETED = "refresh_completed"


class EventObserver:
    """空观察者；子类覆盖 notify 即可接收事件"""

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        pass


class LoggingObserver(EventObserver):
    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        log.info(f"Pool event {event}: {payload}", tag="EVENT")


def safe_notify(observer: Optional[EventObserver], event: str, payload: Dict[str, Any]) -> None:
    """调用观察者，吞掉并记录其异常"""
    if observer is None:
        return
    try:
        observer.notify(event, payload)
    except Exception as e:
        log.warning(f"Event observer failed on '{event}': {e}", tag="EVENT")


@dataclass
class CaptureRecord:
    """一次交换的捕获记录"""
    request_id: str
    source: str
    target: str
    model: str
    stream: bool
    started_at: float = field(default_factory=time.time)
    request_before: Any = None
    request_after: Any = None
    native_response: Any = None
    converted_response: Any = None
    native_chunks: List[Any] = field(default_factory=list)
    converted_chunks: List[Any] = field(default_factory=list)
    flushed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "source": self.source,
            "target": self.target,
            "model": self.model,
            "stream": self.stream,
            "started_at": self.started_at,
            "request_before": self.request_before,
            "request_after": self.request_after,
            "native_response": self.native_response,
            "converted_response": self.converted_response,
            "native_chunks": list(self.native_chunks),
            "converted_chunks": list(self.converted_chunks),
        }


class DiagnosticCapture:
    """
    诊断捕获器

    Args:
        sink: 接收已完成记录（dict）的回调；默认写 debug 日志
        flush_delay: 流式终止后延迟落盘的秒数
        max_records: 内存中保留的已完成记录数量上限
    """

    def __init__(
        self,
        sink: Optional[Callable[[Dict[str, Any]], None]] = None,
        *,
        flush_delay: float = 2.0,
        max_records: int = 100,
    ):
        self._sink = sink
        self.flush_delay = flush_delay
        self._pending: Dict[str, CaptureRecord] = {}
        self._completed: Deque[CaptureRecord] = deque(maxlen=max_records)
        self._lock = Lock()
        self._tasks: set = set()

    # ------------------------------------------------------------------
    # 记录
    # ------------------------------------------------------------------

    def _record(self, ctx: ConversionContext) -> CaptureRecord:
        with self._lock:
            record = self._pending.get(ctx.request_id)
            if record is None:
                record = CaptureRecord(
                    request_id=ctx.request_id,
                    source=ctx.source.value,
                    target=ctx.target.value,
                    model=ctx.model,
                    stream=ctx.stream,
                )
                self._pending[ctx.request_id] = record
            return record

    def capture_request(self, ctx: ConversionContext, before: Any = None, after: Any = None) -> None:
        """记录转换前 / 后的请求体（None 表示保留已有值）"""
        try:
            record = self._record(ctx)
            if before is not None:
                record.request_before = before
            if after is not None:
                record.request_after = after
        except Exception as e:
            log.warning(f"Capture of request failed: {e}", tag="CAPTURE")

    def capture_response(self, ctx: ConversionContext, native: Any = None, converted: Any = None) -> None:
        """非流式响应：收到转换后的响应时落盘"""
        try:
            record = self._record(ctx)
            if native is not None:
                record.native_response = native
            if converted is not None:
                record.converted_response = converted
                self._flush(ctx.request_id)
        except Exception as e:
            log.warning(f"Capture of response failed: {e}", tag="CAPTURE")

    def capture_chunk(self, ctx: ConversionContext, native: Any = None,
                      converted: Optional[List[Any]] = None) -> None:
        try:
            if native is not None:
                ctx.captured_native.append(native)
            if converted:
                ctx.captured_converted.extend(converted)
        except Exception as e:
            log.warning(f"Capture of chunk failed: {e}", tag="CAPTURE")

    def finish_stream(self, ctx: ConversionContext) -> None:
        """
        流式结束：把上下文中聚合的块挂到记录上，延迟 flush_delay 秒后落盘

        没有运行中的事件循环时直接落盘。
        """
        try:
            record = self._record(ctx)
            record.native_chunks = list(ctx.captured_native)
            record.converted_chunks = list(ctx.captured_converted)
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._flush(ctx.request_id)
                return
            task = loop.create_task(self._delayed_flush(ctx.request_id))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        except Exception as e:
            log.warning(f"Capture of stream failed: {e}", tag="CAPTURE")

    async def _delayed_flush(self, request_id: str) -> None:
        await asyncio.sleep(self.flush_delay)
        try:
            self._flush(request_id)
        except Exception as e:
            log.warning(f"Delayed capture flush failed: {e}", tag="CAPTURE")

    def discard(self, ctx: ConversionContext) -> None:
        with self._lock:
            self._pending.pop(ctx.request_id, None)

    # ------------------------------------------------------------------
    # 落盘
    # ------------------------------------------------------------------

    def _flush(self, request_id: str) -> None:
        with self._lock:
            record = self._pending.pop(request_id, None)
        if record is None:
            return
        record.flushed_at = time.time()
        with self._lock:
            self._completed.append(record)
        data = record.to_dict()
        if self._sink is not None:
            try:
                self._sink(data)
            except Exception as e:
                log.warning(f"Capture sink failed for {request_id}: {e}", tag="CAPTURE")
        else:
            log.debug(
                f"Captured exchange {request_id} {record.source}->{record.target} "
                f"(native_chunks={len(record.native_chunks)}, converted_chunks={len(record.converted_chunks)})",
                tag="CAPTURE",
            )

    async def drain(self) -> None:
        """等待所有延迟落盘任务完成"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def completed(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._completed]

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
