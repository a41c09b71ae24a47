"""
后台刷新调度器 - Background Refresh Scheduler

周期性地对过期 / 被标记 needs_refresh 的凭证调用提供商的 sync_usage：
- 成功: PoolManager.report_usage_sync（可把 disabled 凭证恢复）
- 失败: PoolManager.report_refresh_failure（只累计 error_count，不禁用）

特性:
- 刷新间隔带随机抖动
- 信号量限制并发数
- 同一凭证同时只会有一个刷新任务
- 也可作为 PoolManager 的 refresh listener，获取凭证时发现过期就立即排队
"""

import asyncio
import random
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set, Union

from log import log

from .credential import CredentialRecord
from .manager import PoolManager

__all__ = ["RefreshScheduler"]

ClientLookup = Union[Dict[str, Any], Callable[[str], Any]]


class RefreshScheduler:
    """
    后台刷新调度器

    Args:
        manager: 凭证池管理器
        clients: {provider_type: client} 或 provider_type -> client 的函数；
                 client 需要提供 async sync_usage(record) -> dict
        interval: 刷新周期（秒）
        concurrency: 最大并发刷新数
        jitter: 周期抖动比例（0.15 表示 ±15%）
    """

    def __init__(
        self,
        manager: PoolManager,
        clients: ClientLookup,
        *,
        interval: float = 600,
        concurrency: int = 5,
        jitter: float = 0.15,
    ):
        self.manager = manager
        self._clients = clients
        self.interval = interval
        self.jitter = jitter
        self.concurrency = max(1, concurrency)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._inflight: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self.is_running = False
        self.last_run_at: Optional[float] = None

    @staticmethod
    def _apply_jitter(base_value: float, jitter_ratio: float) -> float:
        """在 base_value 上施加 ±jitter_ratio 的随机抖动"""
        if jitter_ratio <= 0:
            return base_value
        return base_value * random.uniform(1.0 - jitter_ratio, 1.0 + jitter_ratio)

    def _client_for(self, provider_type: str) -> Any:
        if callable(self._clients) and not isinstance(self._clients, dict):
            return self._clients(provider_type)
        return self._clients.get(provider_type)

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            log.warning("Refresh scheduler already running, skip", tag="SCHEDULER")
            return
        self.is_running = True
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        log.info(f"Refresh scheduler started (interval: {self.interval:.0f}s)", tag="SCHEDULER")

    async def stop(self) -> None:
        self.is_running = False
        tasks = list(self._tasks)
        if self._refresh_task is not None:
            tasks.append(self._refresh_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._refresh_task = None
        log.info("Refresh scheduler stopped", tag="SCHEDULER")

    async def _refresh_loop(self) -> None:
        while self.is_running:
            try:
                await self.run_once()
                delay = self._apply_jitter(self.interval, self.jitter)
                log.debug(f"Next refresh cycle in {delay:.0f}s", tag="SCHEDULER")
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                log.info("Refresh loop cancelled", tag="SCHEDULER")
                break
            except Exception as e:
                log.error(f"Refresh loop error: {e}", tag="SCHEDULER")
                await asyncio.sleep(max(60.0, self.interval))

    # ------------------------------------------------------------------
    # 刷新
    # ------------------------------------------------------------------

    async def run_once(self, records: Optional[Iterable[CredentialRecord]] = None) -> Dict[str, int]:
        """
        刷新一轮

        Args:
            records: 要刷新的记录；默认取 manager.records_needing_refresh()

        Returns:
            {"refreshed": 成功数, "failed": 失败数, "skipped": 跳过数}
        """
        start_time = time.time()
        targets = list(records) if records is not None else self.manager.records_needing_refresh()
        if not targets:
            return {"refreshed": 0, "failed": 0, "skipped": 0}

        random.shuffle(targets)
        results = await asyncio.gather(*(self.refresh_one(r) for r in targets))
        summary = {
            "refreshed": sum(1 for r in results if r is True),
            "failed": sum(1 for r in results if r is False),
            "skipped": sum(1 for r in results if r is None),
        }
        self.last_run_at = time.time()
        log.info(
            f"Refresh cycle done in {self.last_run_at - start_time:.1f}s: "
            f"{summary['refreshed']} ok, {summary['failed']} failed, {summary['skipped']} skipped",
            tag="SCHEDULER",
        )
        return summary

    async def refresh_one(self, record: CredentialRecord) -> Optional[bool]:
        """刷新单个凭证；返回 True 成功 / False 失败 / None 跳过"""
        key = f"{record.provider_type}/{record.uuid}"
        if key in self._inflight:
            return None
        client = self._client_for(record.provider_type)
        if client is None:
            log.debug(f"No client for {record.provider_type}, skip refresh", tag="SCHEDULER")
            return None

        self._inflight.add(key)
        try:
            if self._semaphore is None:
                self._semaphore = asyncio.Semaphore(self.concurrency)
            async with self._semaphore:
                try:
                    snapshot = await client.sync_usage(record)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.manager.report_refresh_failure(record, e)
                    return False
                self.manager.report_usage_sync(record, snapshot or {})
                return True
        finally:
            self._inflight.discard(key)

    def enqueue(self, record: CredentialRecord) -> None:
        """
        排队刷新单个凭证（PoolManager 的 refresh listener）

        没有运行中的事件循环时只保留 needs_refresh 标记，等下一轮周期处理。
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh_one(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "interval": self.interval,
            "last_run_at": self.last_run_at,
            "inflight": len(self._inflight),
        }
