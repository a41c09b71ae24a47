"""
凭证池

- credential:    单个凭证的状态与计数
- provider_pool: 单个提供商类型的轮询池
- manager:       所有池的入口与事件广播
- router:        凭证切换 + 降级链分派
- scheduler:     后台用量同步 / token 刷新
"""

from .credential import CredentialRecord, CredentialStatus, FailureOutcome
from .manager import PoolManager, PoolSettings
from .provider_pool import ProviderPool
from .router import DispatchResult, FallbackRouter, RouteDecision
from .scheduler import RefreshScheduler

__all__ = [
    "CredentialRecord",
    "CredentialStatus",
    "FailureOutcome",
    "ProviderPool",
    "PoolManager",
    "PoolSettings",
    "FallbackRouter",
    "DispatchResult",
    "RouteDecision",
    "RefreshScheduler",
]
