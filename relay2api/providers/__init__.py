"""
提供商客户端

create_provider_client() 按提供商类型对应的协议选择客户端实现。
"""

from typing import Dict, Optional, Type

from ..converters.registry import protocol_for_provider
from ..models import Protocol
from ..transport import Transport
from .base import ProviderClient, ProviderConfig
from .claude import ClaudeClient
from .gemini import GeminiClient
from .grok import GrokClient
from .kiro import KiroClient
from .openai import OpenAIClient, OpenAIResponsesClient

__all__ = [
    "ProviderClient",
    "ProviderConfig",
    "ClaudeClient",
    "GeminiClient",
    "GrokClient",
    "KiroClient",
    "OpenAIClient",
    "OpenAIResponsesClient",
    "CLIENT_CLASSES",
    "create_provider_client",
]

CLIENT_CLASSES: Dict[Protocol, Type[ProviderClient]] = {
    Protocol.OPENAI: OpenAIClient,
    Protocol.OPENAI_RESPONSES: OpenAIResponsesClient,
    Protocol.CLAUDE: ClaudeClient,
    Protocol.GEMINI: GeminiClient,
    Protocol.GROK: GrokClient,
    Protocol.KIRO: KiroClient,
}


def create_provider_client(provider_type: str, transport: Transport,
                           config: Optional[ProviderConfig] = None) -> ProviderClient:
    client_cls = CLIENT_CLASSES[protocol_for_provider(provider_type)]
    return client_cls(transport, config or ProviderConfig(provider_type), provider_type=provider_type)
