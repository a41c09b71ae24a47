"""
Thinking 标签解析器测试

覆盖结束标记判定（空行 / 流结束 / 反引号引用）与任意分块边界。
"""

import pytest

from relay2api.thinking_parser import Segment, ThinkingTagParser, split_thinking_text


def _run(chunks, emit_partial=True):
    parser = ThinkingTagParser(emit_partial=emit_partial)
    segments = []
    for chunk in chunks:
        segments.extend(parser.feed(chunk))
    segments.extend(parser.finish())
    return segments


def _merge(segments):
    merged = []
    for seg in segments:
        if merged and merged[-1][0] == seg.kind:
            merged[-1] = (seg.kind, merged[-1][1] + seg.content)
        else:
            merged.append((seg.kind, seg.content))
    return merged


class TestSplitThinkingText:
    """一次性解析"""

    def test_close_followed_by_blank_line(self):
        """结束标记后跟空行时切换到可见文本"""
        assert split_thinking_text("<thinking>X</thinking>\n\nY") == [
            Segment("thinking", "X"),
            Segment("text", "Y"),
        ]

    def test_backtick_quoted_terminator(self):
        """反引号内的结束标记不算结束"""
        text = "<thinking>about `</thinking>` tag</thinking>\n\nhi"
        assert split_thinking_text(text) == [
            Segment("thinking", "about `</thinking>` tag"),
            Segment("text", "hi"),
        ]

    def test_stray_backtick_does_not_swallow_close(self):
        """单个未配对的反引号不会把后面的结束标记变成引用"""
        assert split_thinking_text("<thinking>use the ` key</thinking>\n\nhello") == [
            Segment("thinking", "use the ` key"),
            Segment("text", "hello"),
        ]

    def test_stray_backtick_in_earlier_paragraph(self):
        text = "<thinking>a ` b\n\nc `</thinking>` d</thinking>\n\nhi"
        assert split_thinking_text(text) == [
            Segment("thinking", "a ` b\n\nc `</thinking>` d"),
            Segment("text", "hi"),
        ]

    def test_stray_backtick_at_end_of_stream(self):
        assert split_thinking_text("<thinking>a `</thinking>") == [Segment("thinking", "a `")]

    def test_close_without_blank_line_is_literal(self):
        """结束标记后直接跟文本时视为字面内容"""
        assert split_thinking_text("<thinking>a</thinking>hello") == [
            Segment("thinking", "a</thinking>hello"),
        ]

    def test_close_at_end_of_stream(self):
        assert split_thinking_text("<thinking>a</thinking>") == [Segment("thinking", "a")]

    def test_close_followed_by_whitespace_at_end(self):
        assert split_thinking_text("<thinking>a</thinking>\n") == [Segment("thinking", "a")]

    def test_plain_text_only(self):
        assert split_thinking_text("just text") == [Segment("text", "just text")]

    def test_text_before_thinking(self):
        assert split_thinking_text("pre<thinking>t</thinking>\n\npost") == [
            Segment("text", "pre"),
            Segment("thinking", "t"),
            Segment("text", "post"),
        ]

    def test_crlf_blank_line(self):
        assert split_thinking_text("<thinking>a</thinking>\r\n\r\nb") == [
            Segment("thinking", "a"),
            Segment("text", "b"),
        ]

    def test_empty_input(self):
        assert split_thinking_text("") == []


class TestIncrementalParsing:
    """增量输入与分块边界"""

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 11])
    def test_any_chunk_size_matches_whole_text(self, size):
        """任意分块大小的结果与整体解析一致"""
        text = "intro <thinking>step `</thinking>` one\nstep two</thinking>\n\nanswer"
        chunks = [text[i:i + size] for i in range(0, len(text), size)]
        expected = [(s.kind, s.content) for s in split_thinking_text(text)]
        assert _merge(_run(chunks)) == expected

    @pytest.mark.parametrize("size", [1, 2, 4, 9])
    def test_stray_backtick_any_chunk_size(self, size):
        text = "<thinking>use the ` key</thinking>\n\nhello"
        chunks = [text[i:i + size] for i in range(0, len(text), size)]
        assert _merge(_run(chunks)) == [("thinking", "use the ` key"), ("text", "hello")]

    def test_open_tag_split_across_chunks(self):
        segments = _run(["hello <thi", "nking>deep</thin", "king>\n", "\nworld"])
        assert _merge(segments) == [("text", "hello "), ("thinking", "deep"), ("text", "world")]

    def test_emit_partial_streams_thinking_early(self):
        """emit_partial=True 时未闭合的 thinking 内容会提前输出"""
        parser = ThinkingTagParser(emit_partial=True)
        out = parser.feed("<thinking>partial reasoning")
        assert out == [Segment("thinking", "partial reasoning")]
        assert parser.in_thinking

    def test_emit_partial_disabled_holds_content(self):
        parser = ThinkingTagParser(emit_partial=False)
        assert parser.feed("<thinking>held") == []
        assert parser.finish() == [Segment("thinking", "held")]

    def test_pending_close_tag_waits_for_more_input(self):
        """标记后内容不足以判断时等待"""
        parser = ThinkingTagParser()
        first = parser.feed("<thinking>a</thinking>")
        assert _merge(first) == [("thinking", "a")]
        assert parser.in_thinking
        rest = parser.feed("\n\nb") + parser.finish()
        assert _merge(rest) == [("text", "b")]

    def test_feed_after_finish_raises(self):
        parser = ThinkingTagParser()
        parser.finish()
        with pytest.raises(RuntimeError):
            parser.feed("x")

    def test_finish_is_idempotent(self):
        parser = ThinkingTagParser()
        parser.feed("text")
        parser.finish()
        assert parser.finish() == []
