"""
凭证池管理器

持有所有提供商类型的凭证池，负责：
- 获取凭证（轮询，无可用时立即抛出 PoolExhaustedError，从不等待）
- 成功 / 失败 / 释放 / 用量同步结果的记录
- 过期凭证打上 needs_refresh 标记并通知后台刷新
- 向观察者广播池事件（credential_disabled / credential_recovered / refresh_completed ...）
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Collection, Dict, Iterable, List, Optional

from log import log

from ..capture import (
    CREDENTIAL_DISABLED,
    CREDENTIAL_RECOVERED,
    REFRESH_COMPLETED,
    EventObserver,
    safe_notify,
)
from ..errors import PoolExhaustedError
from .credential import CredentialRecord, FailureOutcome
from .provider_pool import ProviderPool

__all__ = ["PoolSettings", "PoolManager"]


@dataclass(frozen=True)
class PoolSettings:
    """池管理相关配置（运行时只读）"""

    credential_switch_max_retries: int = 5
    max_error_count: int = 10
    cron_near_minutes: float = 15
    reset_error_count_on_success: bool = True
    reset_error_count_on_usage_sync: bool = True


class PoolManager:
    """
    所有提供商凭证池的入口

    Args:
        settings: 池配置
        observer: 事件观察者，默认不做任何事
    """

    def __init__(self, settings: Optional[PoolSettings] = None, observer: Optional[EventObserver] = None):
        self.settings = settings or PoolSettings()
        self.observer = observer or EventObserver()
        self._pools: Dict[str, ProviderPool] = {}
        self._refresh_listener: Optional[Callable[[CredentialRecord], None]] = None

    @classmethod
    def from_config(
        cls,
        pools: Dict[str, List[Dict[str, Any]]],
        settings: Optional[PoolSettings] = None,
        observer: Optional[EventObserver] = None,
    ) -> "PoolManager":
        """由 {provider_type: [凭证 dict, ...]} 构建"""
        manager = cls(settings, observer)
        for provider_type, entries in pools.items():
            manager.register_provider(provider_type)
            for entry in entries or []:
                manager.add_credential(CredentialRecord.from_dict(provider_type, entry))
        log.info(
            f"Loaded credential pools: "
            + ", ".join(f"{p}={len(pool)}" for p, pool in manager._pools.items()),
            tag="POOL",
        )
        return manager

    # ------------------------------------------------------------------
    # 池维护
    # ------------------------------------------------------------------

    def register_provider(self, provider_type: str) -> ProviderPool:
        pool = self._pools.get(provider_type)
        if pool is None:
            pool = ProviderPool(provider_type)
            self._pools[provider_type] = pool
        return pool

    def add_credential(self, record: CredentialRecord) -> None:
        if record.is_eligible() and record.error_count >= self.settings.max_error_count:
            record.disable(f"error count reached {self.settings.max_error_count}")
        self.register_provider(record.provider_type).add(record)

    def remove_credential(self, provider_type: str, uuid: str) -> Optional[CredentialRecord]:
        pool = self._pools.get(provider_type)
        return pool.remove(uuid) if pool else None

    def get_pool(self, provider_type: str) -> Optional[ProviderPool]:
        return self._pools.get(provider_type)

    def get_credential(self, provider_type: str, uuid: str) -> Optional[CredentialRecord]:
        pool = self._pools.get(provider_type)
        return pool.get(uuid) if pool else None

    @property
    def provider_types(self) -> List[str]:
        return list(self._pools)

    def has_provider(self, provider_type: str) -> bool:
        return provider_type in self._pools

    def iter_records(self) -> Iterable[CredentialRecord]:
        for pool in list(self._pools.values()):
            yield from pool.records

    def set_refresh_listener(self, listener: Optional[Callable[[CredentialRecord], None]]) -> None:
        """新标记为 needs_refresh 的记录会交给 listener（通常是后台调度器）"""
        self._refresh_listener = listener

    # ------------------------------------------------------------------
    # 获取 / 释放
    # ------------------------------------------------------------------

    def try_acquire(self, provider_type: str, exclude: Collection[str] = ()) -> Optional[CredentialRecord]:
        """获取凭证；没有可用记录时返回 None"""
        pool = self._pools.get(provider_type)
        if pool is None:
            return None
        record = pool.acquire(exclude)
        if record is not None:
            self._check_stale(record)
        return record

    def acquire(self, provider_type: str, exclude: Collection[str] = ()) -> CredentialRecord:
        """
        获取凭证

        Raises:
            PoolExhaustedError: 该提供商没有可用凭证
        """
        record = self.try_acquire(provider_type, exclude)
        if record is None:
            raise PoolExhaustedError(
                f"No eligible credential for provider '{provider_type}'",
                provider_type=provider_type,
                attempted_providers=[provider_type],
            )
        return record

    def _check_stale(self, record: CredentialRecord) -> None:
        if not record.is_stale(self.settings.cron_near_minutes):
            return
        if record.mark_needs_refresh():
            log.debug(f"Credential {record.provider_type}/{record.display_name} queued for refresh", tag="POOL")
            listener = self._refresh_listener
            if listener is not None:
                try:
                    listener(record)
                except Exception as e:
                    log.warning(f"Refresh listener failed: {e}", tag="POOL")

    def release(self, record: CredentialRecord) -> None:
        record.release()

    # ------------------------------------------------------------------
    # 结果记录
    # ------------------------------------------------------------------

    def report_success(self, record: CredentialRecord) -> None:
        record.record_success(self.settings.reset_error_count_on_success)

    def report_failure(self, record: CredentialRecord, error: Exception) -> FailureOutcome:
        outcome = record.record_failure(error, self.settings.max_error_count)
        if outcome.disabled_now:
            log.warning(
                f"Credential {record.provider_type}/{record.display_name} disabled: {outcome.reason}",
                tag="POOL",
            )
            safe_notify(self.observer, CREDENTIAL_DISABLED, {
                "provider_type": record.provider_type,
                "uuid": record.uuid,
                "reason": outcome.reason,
                "error_count": outcome.error_count,
            })
        else:
            log.debug(
                f"Credential {record.provider_type}/{record.display_name} error_count={outcome.error_count}",
                tag="POOL",
            )
        return outcome

    def report_usage_sync(self, record: CredentialRecord, snapshot: Optional[Dict[str, Any]] = None) -> bool:
        """用量同步 / 刷新成功；返回是否从 disabled 恢复"""
        recovered = record.mark_refreshed(
            snapshot, reset_error_count=self.settings.reset_error_count_on_usage_sync,
        )
        if recovered:
            log.success(f"Credential {record.provider_type}/{record.display_name} recovered", tag="POOL")
            safe_notify(self.observer, CREDENTIAL_RECOVERED, {
                "provider_type": record.provider_type,
                "uuid": record.uuid,
            })
        safe_notify(self.observer, REFRESH_COMPLETED, {
            "provider_type": record.provider_type,
            "uuid": record.uuid,
            "success": True,
        })
        return recovered

    def report_refresh_failure(self, record: CredentialRecord, error: Exception) -> int:
        count = record.record_refresh_failure(error)
        log.warning(
            f"Refresh failed for {record.provider_type}/{record.display_name} (error_count={count}): {error}",
            tag="POOL",
        )
        safe_notify(self.observer, REFRESH_COMPLETED, {
            "provider_type": record.provider_type,
            "uuid": record.uuid,
            "success": False,
            "error": str(error),
        })
        return count

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def records_needing_refresh(self, now: Optional[float] = None) -> List[CredentialRecord]:
        """过期或已标记的记录（包括 disabled 的记录，刷新成功可以恢复它们）"""
        now = time.time() if now is None else now
        return [
            r for r in self.iter_records()
            if r.needs_refresh or r.is_stale(self.settings.cron_near_minutes, now)
        ]

    def status(self) -> Dict[str, Any]:
        return {
            provider_type: {
                **pool.counts(),
                "credentials": [r.snapshot() for r in pool.records],
            }
            for provider_type, pool in self._pools.items()
        }
