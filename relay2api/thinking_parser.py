"""
Thinking 标签流式解析器

把上游的纯文本（Kiro 等提供商把推理过程内联在 <thinking>...</thinking> 中）
拆分为有序的 thinking / text 片段，支持任意分块边界的增量输入。

结束标记 </thinking> 只有在以下情况才算真正结束：
1. 紧跟一个空行（两个连续换行），表示切换到可见文本
2. 位于缓冲区末尾且流已结束

其他位置（例如 `</thinking>hello`）一律当作 thinking 内的字面文本。
位于反引号引用片段内的 `</thinking>` 永远不是结束标记。
"""

from dataclasses import dataclass
from typing import List, Tuple

__all__ = [
    "OPEN_TAG",
    "CLOSE_TAG",
    "Segment",
    "ThinkingTagParser",
    "split_thinking_text",
]

OPEN_TAG = "<thinking>"
CLOSE_TAG = "</thinking>"
_BLANK_LINES = ("\n\n", "\r\n\r\n")

THINKING = "thinking"
TEXT = "text"


@dataclass(frozen=True)
class Segment:
    kind: str
    content: str

    @property
    def is_thinking(self) -> bool:
        return self.kind == THINKING


def _partial_suffix_len(text: str, marker: str) -> int:
    """text 末尾可能是 marker 前缀的最大长度（需要等待更多输入才能判断）"""
    max_len = min(len(text), len(marker) - 1)
    for n in range(max_len, 0, -1):
        if text.endswith(marker[:n]):
            return n
    return 0


class ThinkingTagParser:
    """
    增量解析器

    用法:
        parser = ThinkingTagParser()
        for chunk in chunks:
            for seg in parser.feed(chunk):
                ...
        for seg in parser.finish():
            ...

    Args:
        emit_partial: 为 True 时，未闭合的 thinking 内容中已确定不属于
            结束标记的部分会被提前输出（流式增量）；为 False 时未闭合的
            thinking 片段一直保留到闭合或流结束。
    """

    def __init__(self, emit_partial: bool = True):
        self.emit_partial = emit_partial
        self._buffer = ""
        self._pos = 0
        self._in_thinking = False
        self._thinking_start = 0
        self._scan_from = 0
        self._finished = False

    @property
    def in_thinking(self) -> bool:
        return self._in_thinking

    @property
    def pending(self) -> str:
        """尚未输出的缓冲文本"""
        return self._buffer[self._pos:]

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, text: str) -> List[Segment]:
        if self._finished:
            raise RuntimeError("parser already finished")
        if text:
            self._buffer += text
        return self._drain(final=False)

    def finish(self) -> List[Segment]:
        """流结束：解决所有悬而未决的标记并输出剩余内容"""
        if self._finished:
            return []
        self._finished = True
        return self._drain(final=True)

    # ------------------------------------------------------------------

    def _drain(self, final: bool) -> List[Segment]:
        out: List[Segment] = []
        while True:
            if self._in_thinking:
                progressed = self._step_thinking(out, final)
            else:
                progressed = self._step_text(out, final)
            if not progressed:
                break

        if not self._in_thinking and self._pos:
            self._buffer = self._buffer[self._pos:]
            self._pos = 0
            self._scan_from = 0
            self._thinking_start = 0
        return out

    def _emit(self, out: List[Segment], kind: str, content: str) -> None:
        if content:
            out.append(Segment(kind, content))

    def _step_text(self, out: List[Segment], final: bool) -> bool:
        buf = self._buffer
        idx = buf.find(OPEN_TAG, self._pos)
        if idx != -1:
            self._emit(out, TEXT, buf[self._pos:idx])
            self._in_thinking = True
            self._thinking_start = idx + len(OPEN_TAG)
            self._scan_from = self._thinking_start
            self._pos = self._thinking_start
            return True

        end = len(buf)
        if not final:
            end -= _partial_suffix_len(buf[self._pos:], OPEN_TAG)
        self._emit(out, TEXT, buf[self._pos:end])
        self._pos = end
        return False

    def _step_thinking(self, out: List[Segment], final: bool) -> bool:
        close_idx, resume_idx, safe_end = self._find_close(final)
        buf = self._buffer

        if close_idx is not None:
            self._emit(out, THINKING, buf[self._pos:close_idx])
            self._pos = resume_idx
            self._in_thinking = False
            return True

        if final:
            self._emit(out, THINKING, buf[self._pos:])
            self._pos = len(buf)
        elif self.emit_partial and safe_end > self._pos:
            self._emit(out, THINKING, buf[self._pos:safe_end])
            self._pos = safe_end
        return False

    def _paragraph_bounds(self, idx: int) -> Tuple[int, int]:
        """idx 所在段落的 [start, end)，段落以空行分隔"""
        buf = self._buffer
        start = self._thinking_start
        for blank in _BLANK_LINES:
            p = buf.rfind(blank, self._thinking_start, idx)
            if p != -1:
                start = max(start, p + len(blank))
        end = len(buf)
        for blank in _BLANK_LINES:
            p = buf.find(blank, idx)
            if p != -1:
                end = min(end, p)
        return start, end

    def _inside_backticks(self, idx: int) -> bool:
        """
        标记是否位于同一段落内成对的反引号之间

        前面有未配对的反引号、且后面（下一个空行之前）还有反引号才算引用；
        单个游离的反引号不会吞掉后续的结束标记。
        """
        buf = self._buffer
        start, end = self._paragraph_bounds(idx)
        if buf.count("`", start, idx) % 2 == 0:
            return False
        return buf.find("`", idx + len(CLOSE_TAG), end) != -1

    def _find_close(self, final: bool) -> Tuple:
        """
        查找真正的结束标记

        Returns:
            (close_idx, resume_idx, safe_end)
            - close_idx/resume_idx 为 None 表示尚未找到
            - safe_end: 可以安全输出的 thinking 内容上界
        """
        buf = self._buffer
        search = self._scan_from
        tag_len = len(CLOSE_TAG)

        while True:
            p = buf.find(CLOSE_TAG, search)
            if p == -1:
                self._scan_from = search
                if final:
                    return None, None, len(buf)
                tail_start = max(search, self._pos)
                return None, None, len(buf) - _partial_suffix_len(buf[tail_start:], CLOSE_TAG)

            if self._inside_backticks(p):
                search = p + 1
                continue

            after = buf[p + tag_len:]
            for blank in _BLANK_LINES:
                if after.startswith(blank):
                    return p, p + tag_len + len(blank), p

            if final:
                # 流结束时，标记之后只剩空白也视为位于缓冲区末尾
                if not after.strip():
                    return p, len(buf), p
            elif any(blank.startswith(after) for blank in _BLANK_LINES):
                # 还不能判断：等待更多输入
                self._scan_from = p
                return None, None, p

            search = p + 1


def split_thinking_text(text: str) -> List[Segment]:
    """
    一次性解析完整文本，相邻的同类片段会被合并

    >>> split_thinking_text("<thinking>a</thinking>\\n\\nhello")
    [Segment(kind='thinking', content='a'), Segment(kind='text', content='hello')]
    """
    parser = ThinkingTagParser()
    segments = parser.feed(text or "") + parser.finish()

    merged: List[Segment] = []
    for seg in segments:
        if merged and merged[-1].kind == seg.kind:
            merged[-1] = Segment(seg.kind, merged[-1].content + seg.content)
        else:
            merged.append(seg)
    return merged
