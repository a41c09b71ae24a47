"""
协议转换器

每个协议一个转换器，全部经由 canonical 模型互转。
"""

from .base import ProtocolConverter
from .claude import ClaudeConverter
from .gemini import GeminiConverter
from .grok import GrokConverter
from .kiro import KiroConverter
from .openai import OpenAIConverter
from .openai_responses import OpenAIResponsesConverter
from .registry import PROVIDER_PROTOCOLS, ConverterRegistry, protocol_for_provider

__all__ = [
    "ProtocolConverter",
    "OpenAIConverter",
    "OpenAIResponsesConverter",
    "ClaudeConverter",
    "GeminiConverter",
    "GrokConverter",
    "KiroConverter",
    "ConverterRegistry",
    "PROVIDER_PROTOCOLS",
    "protocol_for_provider",
]
