"""
凭证记录 - 单个凭证的状态机

状态转换（全部在记录自身的锁内原子完成）：
- active  --(401/403 认证失败)-->            disabled
- active  --(error_count 达到 max_error_count)--> disabled
- *       --(刷新 / 用量同步成功)-->          active, error_count = 0
- active  --(last_sync_at 过期)-->            needs_refresh 标记（不影响获取）

刷新失败只增加 error_count，不会单独导致禁用。
"""

import threading
import time
import uuid as uuid_lib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import AuthError

__all__ = [
    "CredentialStatus",
    "CredentialRecord",
    "FailureOutcome",
]


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


@dataclass(frozen=True)
class FailureOutcome:
    """一次失败记录的结果"""

    error_count: int
    disabled_now: bool
    reason: Optional[str] = None


@dataclass
class CredentialRecord:
    """
    凭证池中的一条记录

    secret 是对提供商透明的凭证数据（token / cookie / api key 等），
    池管理逻辑从不解析它。
    """

    provider_type: str
    secret: Dict[str, Any] = field(default_factory=dict)
    uuid: str = field(default_factory=lambda: str(uuid_lib.uuid4()))
    custom_name: Optional[str] = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    error_count: int = 0
    needs_refresh: bool = False
    last_sync_at: Optional[float] = None
    usage_snapshot: Dict[str, Any] = field(default_factory=dict)
    last_used_at: Optional[float] = None
    usage_count: int = 0
    in_flight: int = 0
    last_error_message: Optional[str] = None
    last_error_at: Optional[float] = None
    disabled_reason: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def display_name(self) -> str:
        return self.custom_name or self.uuid[:8]

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def is_eligible(self) -> bool:
        """只看状态；错误计数达到阈值时 record_failure 已经把记录禁用"""
        with self._lock:
            return self.status is CredentialStatus.ACTIVE

    def is_stale(self, near_minutes: float, now: Optional[float] = None) -> bool:
        """距上次同步超过 near_minutes（从未同步也算过期）"""
        now = time.time() if now is None else now
        with self._lock:
            if self.last_sync_at is None:
                return True
            return now - self.last_sync_at > near_minutes * 60

    # ------------------------------------------------------------------
    # 状态转换
    # ------------------------------------------------------------------

    def record_use(self, now: Optional[float] = None) -> None:
        with self._lock:
            self.usage_count += 1
            self.in_flight += 1
            self.last_used_at = time.time() if now is None else now

    def release(self) -> None:
        with self._lock:
            if self.in_flight > 0:
                self.in_flight -= 1

    def record_success(self, reset_error_count: bool = True) -> None:
        with self._lock:
            if reset_error_count:
                self.error_count = 0

    def record_failure(self, error: Exception, max_error_count: int) -> FailureOutcome:
        """
        记录一次请求失败

        计数与禁用阈值检查在同一个临界区内完成，
        并发失败不会越过阈值而不禁用。
        """
        with self._lock:
            self.error_count += 1
            self.last_error_message = str(error)[:500]
            self.last_error_at = time.time()

            if self.status is CredentialStatus.DISABLED:
                return FailureOutcome(self.error_count, False)

            reason = None
            if isinstance(error, AuthError):
                reason = f"auth failure ({error.status_code or 'unknown'})"
            elif self.error_count >= max_error_count:
                reason = f"error count reached {max_error_count}"

            if reason:
                self.status = CredentialStatus.DISABLED
                self.disabled_reason = reason
                return FailureOutcome(self.error_count, True, reason)
            return FailureOutcome(self.error_count, False)

    def mark_needs_refresh(self) -> bool:
        """标记需要后台刷新；返回是否为新标记"""
        with self._lock:
            if self.needs_refresh:
                return False
            self.needs_refresh = True
            return True

    def mark_refreshed(self, snapshot: Optional[Dict[str, Any]] = None, *,
                       reset_error_count: bool = True, now: Optional[float] = None) -> bool:
        """
        刷新 / 用量同步成功

        Args:
            snapshot: 最新用量快照
            reset_error_count: 为 True 时恢复为 active 并清零错误计数

        Returns:
            是否从 disabled 恢复
        """
        with self._lock:
            self.last_sync_at = time.time() if now is None else now
            if snapshot is not None:
                self.usage_snapshot = dict(snapshot)
            self.needs_refresh = False
            if not reset_error_count:
                return False
            recovered = self.status is CredentialStatus.DISABLED
            self.status = CredentialStatus.ACTIVE
            self.error_count = 0
            self.disabled_reason = None
            return recovered

    def record_refresh_failure(self, error: Exception) -> int:
        with self._lock:
            self.error_count += 1
            self.last_error_message = f"refresh failed: {error}"[:500]
            self.last_error_at = time.time()
            return self.error_count

    def disable(self, reason: str) -> None:
        with self._lock:
            self.status = CredentialStatus.DISABLED
            self.disabled_reason = reason

    def enable(self) -> None:
        with self._lock:
            self.status = CredentialStatus.ACTIVE
            self.error_count = 0
            self.disabled_reason = None

    # ------------------------------------------------------------------
    # 序列化
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """状态快照（不含 secret）"""
        with self._lock:
            return {
                "uuid": self.uuid,
                "provider_type": self.provider_type,
                "name": self.display_name,
                "status": self.status.value,
                "error_count": self.error_count,
                "needs_refresh": self.needs_refresh,
                "last_sync_at": self.last_sync_at,
                "last_used_at": self.last_used_at,
                "usage_count": self.usage_count,
                "in_flight": self.in_flight,
                "usage": dict(self.usage_snapshot),
                "last_error": self.last_error_message,
                "disabled_reason": self.disabled_reason,
            }

    @classmethod
    def from_dict(cls, provider_type: str, data: Dict[str, Any]) -> "CredentialRecord":
        known = {"uuid", "customName", "custom_name", "isDisabled", "is_disabled", "errorCount",
                 "error_count", "lastSyncAt", "last_sync_at"}
        secret = {k: v for k, v in data.items() if k not in known}
        disabled = bool(data.get("isDisabled", data.get("is_disabled", False)))
        kwargs: Dict[str, Any] = {}
        if data.get("uuid"):
            kwargs["uuid"] = str(data["uuid"])
        return cls(
            provider_type=provider_type,
            secret=secret,
            custom_name=data.get("customName", data.get("custom_name")),
            status=CredentialStatus.DISABLED if disabled else CredentialStatus.ACTIVE,
            error_count=int(data.get("errorCount", data.get("error_count", 0)) or 0),
            last_sync_at=data.get("lastSyncAt", data.get("last_sync_at")),
            disabled_reason="disabled in configuration" if disabled else None,
            **kwargs,
        )
