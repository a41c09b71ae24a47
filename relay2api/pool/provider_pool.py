"""
单个提供商类型的凭证池

记录列表 + 轮询游标，增删与获取都在池锁内完成：
两个并发的 acquire 永远不会拿到同一个槽位。
"""

import threading
from typing import Collection, Dict, List, Optional

from log import log

from .credential import CredentialRecord

__all__ = ["ProviderPool"]


class ProviderPool:
    """轮询凭证池"""

    def __init__(self, provider_type: str, records: Optional[List[CredentialRecord]] = None):
        self.provider_type = provider_type
        self._records: List[CredentialRecord] = []
        self._cursor = 0
        self._lock = threading.Lock()
        for record in records or []:
            self.add(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def records(self) -> List[CredentialRecord]:
        with self._lock:
            return list(self._records)

    def add(self, record: CredentialRecord) -> None:
        if record.provider_type != self.provider_type:
            raise ValueError(
                f"Credential {record.uuid} belongs to '{record.provider_type}', not '{self.provider_type}'"
            )
        with self._lock:
            if any(r.uuid == record.uuid for r in self._records):
                raise ValueError(f"Duplicate credential uuid {record.uuid}")
            self._records.append(record)

    def remove(self, uuid: str) -> Optional[CredentialRecord]:
        with self._lock:
            for idx, record in enumerate(self._records):
                if record.uuid == uuid:
                    del self._records[idx]
                    # 保持游标指向被删除记录的下一个
                    if idx < self._cursor:
                        self._cursor -= 1
                    if self._records:
                        self._cursor %= len(self._records)
                    else:
                        self._cursor = 0
                    return record
        return None

    def get(self, uuid: str) -> Optional[CredentialRecord]:
        with self._lock:
            for record in self._records:
                if record.uuid == uuid:
                    return record
        return None

    def acquire(self, exclude: Collection[str] = ()) -> Optional[CredentialRecord]:
        """
        轮询获取下一个可用凭证

        跳过 disabled 以及本次请求已排除的记录。
        成功时同时记录使用（usage_count / in_flight / last_used_at）。

        Returns:
            凭证记录；没有可用记录时返回 None（从不等待）
        """
        with self._lock:
            total = len(self._records)
            for offset in range(total):
                idx = (self._cursor + offset) % total
                record = self._records[idx]
                if record.uuid in exclude or not record.is_eligible():
                    continue
                self._cursor = (idx + 1) % total
                record.record_use()
                log.debug(
                    f"Acquired {self.provider_type}/{record.display_name} (slot {idx}/{total})",
                    tag="POOL",
                )
                return record
        return None

    def counts(self) -> Dict[str, int]:
        records = self.records
        eligible = sum(1 for r in records if r.is_eligible())
        return {"total": len(records), "eligible": eligible, "unavailable": len(records) - eligible}
