"""
转换器注册中心

按协议管理 ProtocolConverter 实例，并负责跨协议转换的组合：
source → canonical → target。提供商类型（凭证池名称）到协议的映射也在这里。
"""

import threading
from typing import Any, Dict, List, Optional, Tuple

from log import log

from ..errors import ConfigurationError, ConversionError
from ..models import CanonicalRequest, CanonicalResponse, NativeEnvelope, Protocol
from .base import ProtocolConverter
from .claude import ClaudeConverter
from .gemini import GeminiConverter
from .grok import GrokConverter
from .kiro import KiroConverter
from .openai import OpenAIConverter
from .openai_responses import OpenAIResponsesConverter

__all__ = [
    "ConverterRegistry",
    "PROVIDER_PROTOCOLS",
    "protocol_for_provider",
]

# 已知的提供商类型 → 协议
PROVIDER_PROTOCOLS: Dict[str, Protocol] = {
    "openai-custom": Protocol.OPENAI,
    "openai-qwen-oauth": Protocol.OPENAI,
    "openaiResponses-custom": Protocol.OPENAI_RESPONSES,
    "claude-custom": Protocol.CLAUDE,
    "claude-kiro-oauth": Protocol.KIRO,
    "gemini-cli-oauth": Protocol.GEMINI,
    "gemini-antigravity": Protocol.GEMINI,
    "grok-custom": Protocol.GROK,
}

# 未登记的提供商类型按前缀推断（顺序敏感：更具体的前缀在前）
_PREFIX_PROTOCOLS: List[Tuple[str, Protocol]] = [
    ("openairesponses", Protocol.OPENAI_RESPONSES),
    ("openai", Protocol.OPENAI),
    ("claude-kiro", Protocol.KIRO),
    ("kiro", Protocol.KIRO),
    ("claude", Protocol.CLAUDE),
    ("gemini", Protocol.GEMINI),
    ("grok", Protocol.GROK),
]


def protocol_for_provider(provider_type: str) -> Protocol:
    """
    提供商类型 → 协议

    Raises:
        ConfigurationError: 无法识别的提供商类型
    """
    if provider_type in PROVIDER_PROTOCOLS:
        return PROVIDER_PROTOCOLS[provider_type]
    lowered = provider_type.lower()
    for prefix, protocol in _PREFIX_PROTOCOLS:
        if lowered.startswith(prefix):
            return protocol
    raise ConfigurationError(f"Unknown provider type '{provider_type}'")


class ConverterRegistry:
    """
    协议转换器注册中心

    默认注册全部内置协议；get_instance() 返回进程级共享实例。
    转换器本身无状态，可以被并发请求共享。
    """

    _instance: Optional["ConverterRegistry"] = None
    _lock = threading.Lock()

    def __init__(self, register_defaults: bool = True):
        self._converters: Dict[Protocol, ProtocolConverter] = {}
        if register_defaults:
            for converter in (
                OpenAIConverter(),
                OpenAIResponsesConverter(),
                ClaudeConverter(),
                GeminiConverter(),
                GrokConverter(),
                KiroConverter(),
            ):
                self.register(converter)

    @classmethod
    def get_instance(cls) -> "ConverterRegistry":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def register(self, converter: ProtocolConverter) -> None:
        self._converters[converter.protocol] = converter

    def get(self, protocol) -> ProtocolConverter:
        protocol = Protocol(protocol)
        converter = self._converters.get(protocol)
        if converter is None:
            raise ConversionError(f"No converter registered for protocol '{protocol.value}'")
        return converter

    def for_provider(self, provider_type: str) -> ProtocolConverter:
        return self.get(protocol_for_provider(provider_type))

    def resolve(self, source, target) -> Tuple[ProtocolConverter, ProtocolConverter]:
        """(source 转换器, target 转换器)"""
        return self.get(source), self.get(target)

    @property
    def protocols(self) -> List[Protocol]:
        return list(self._converters)

    # ------------------------------------------------------------------
    # 便捷组合
    # ------------------------------------------------------------------

    def to_canonical_request(self, envelope: NativeEnvelope) -> CanonicalRequest:
        return self.get(envelope.protocol).to_canonical_request(envelope.body)

    def to_canonical_response(self, envelope: NativeEnvelope) -> CanonicalResponse:
        return self.get(envelope.protocol).to_canonical_response(envelope.body)

    def convert_request(self, native: Dict[str, Any], source, target) -> Dict[str, Any]:
        """source 协议的请求 → target 协议的请求"""
        source_conv, target_conv = self.resolve(source, target)
        canonical = source_conv.to_canonical_request(native)
        log.debug(
            f"Converting request {source_conv.protocol.value} -> {target_conv.protocol.value} "
            f"(model={canonical.model}, messages={len(canonical.messages)})",
            tag="CONVERTER",
        )
        return target_conv.from_canonical_request(canonical)

    def convert_response(self, native: Dict[str, Any], source, target) -> Dict[str, Any]:
        """source 协议的非流式响应 → target 协议的响应"""
        source_conv, target_conv = self.resolve(source, target)
        return target_conv.from_canonical_response(source_conv.to_canonical_response(native))
