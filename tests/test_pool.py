"""
凭证记录 / 提供商池 / 池管理器测试
"""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from relay2api.capture import EventObserver
from relay2api.errors import AuthError, PoolExhaustedError, TransportError
from relay2api.pool import CredentialRecord, CredentialStatus, PoolManager, PoolSettings, ProviderPool


class RecordingObserver(EventObserver):
    def __init__(self):
        self.events = []

    def notify(self, event, payload):
        self.events.append((event, payload))

    def names(self):
        return [name for name, _ in self.events]


class ExplodingObserver(EventObserver):
    def notify(self, event, payload):
        raise RuntimeError("observer down")


def _record(provider="openai-custom", name=None, **kwargs):
    kwargs.setdefault("last_sync_at", time.time())
    return CredentialRecord(provider_type=provider, custom_name=name, **kwargs)


def _manager(count=3, provider="openai-custom", observer=None, **settings):
    manager = PoolManager(PoolSettings(**settings), observer)
    for i in range(count):
        manager.add_credential(_record(provider, name=f"cred-{i}"))
    return manager


class TestCredentialRecord:
    """单个凭证的状态转换"""

    def test_failure_below_threshold_keeps_active(self):
        record = _record()
        outcome = record.record_failure(TransportError("reset"), max_error_count=3)
        assert outcome.error_count == 1
        assert not outcome.disabled_now
        assert record.status is CredentialStatus.ACTIVE
        assert record.last_error_message == "reset"

    def test_threshold_disables_once(self):
        record = _record()
        outcomes = [record.record_failure(TransportError("x"), max_error_count=2) for _ in range(3)]
        assert [o.disabled_now for o in outcomes] == [False, True, False]
        assert record.status is CredentialStatus.DISABLED
        assert record.disabled_reason == "error count reached 2"

    def test_auth_failure_disables_immediately(self):
        record = _record()
        outcome = record.record_failure(AuthError("no", status_code=403), max_error_count=10)
        assert outcome.disabled_now
        assert outcome.reason == "auth failure (403)"

    def test_refresh_recovers(self):
        record = _record(status=CredentialStatus.DISABLED, error_count=7, needs_refresh=True)
        assert record.mark_refreshed({"remaining": 10}, now=100.0) is True
        assert record.status is CredentialStatus.ACTIVE
        assert record.error_count == 0
        assert record.needs_refresh is False
        assert record.last_sync_at == 100.0
        assert record.usage_snapshot == {"remaining": 10}

    def test_refresh_without_reset_keeps_state(self):
        record = _record(status=CredentialStatus.DISABLED, error_count=2)
        assert record.mark_refreshed({}, reset_error_count=False) is False
        assert record.status is CredentialStatus.DISABLED
        assert record.error_count == 2

    def test_stale(self):
        record = _record(last_sync_at=1000.0)
        assert record.is_stale(15, now=1000.0 + 15 * 60 + 1)
        assert not record.is_stale(15, now=1000.0 + 60)
        assert _record(last_sync_at=None).is_stale(15)

    def test_mark_needs_refresh_only_once(self):
        record = _record()
        assert record.mark_needs_refresh() is True
        assert record.mark_needs_refresh() is False

    def test_release_never_negative(self):
        record = _record()
        record.release()
        assert record.in_flight == 0

    def test_from_dict_splits_secret(self):
        record = CredentialRecord.from_dict("grok-custom", {
            "uuid": "u-1", "customName": "main", "isDisabled": True, "errorCount": 2, "cookie": "sso=abc",
        })
        assert record.uuid == "u-1"
        assert record.display_name == "main"
        assert record.status is CredentialStatus.DISABLED
        assert record.error_count == 2
        assert record.secret == {"cookie": "sso=abc"}

    def test_snapshot_hides_secret(self):
        record = _record(secret={"api_key": "sk-secret"})
        snapshot = record.snapshot()
        assert "secret" not in snapshot
        assert "sk-secret" not in str(snapshot)


class TestProviderPool:
    """轮询池"""

    def test_round_robin(self):
        pool = ProviderPool("openai-custom", [_record(name=n) for n in "abc"])
        names = [pool.acquire().display_name for _ in range(4)]
        assert names == ["a", "b", "c", "a"]

    def test_skips_ineligible_and_excluded(self):
        a, b, c = _record(name="a"), _record(name="b", status=CredentialStatus.DISABLED), _record(name="c")
        pool = ProviderPool("openai-custom", [a, b, c])
        assert pool.acquire(exclude={a.uuid}) is c
        assert pool.acquire(exclude={a.uuid, c.uuid}) is None

    def test_eligibility_follows_status(self):
        """错误计数本身不影响获取，禁用由状态决定"""
        record = _record(error_count=50)
        pool = ProviderPool("openai-custom", [record])
        assert pool.acquire() is record
        record.disable("manual")
        assert pool.acquire() is None

    def test_acquire_records_use(self):
        record = _record()
        ProviderPool("openai-custom", [record]).acquire()
        assert record.usage_count == 1
        assert record.in_flight == 1
        assert record.last_used_at is not None

    def test_rejects_foreign_and_duplicate(self):
        pool = ProviderPool("openai-custom")
        record = _record()
        pool.add(record)
        with pytest.raises(ValueError):
            pool.add(record)
        with pytest.raises(ValueError):
            pool.add(_record(provider="claude-custom"))

    def test_remove_keeps_rotation(self):
        records = [_record(name=n) for n in "abc"]
        pool = ProviderPool("openai-custom", records)
        pool.acquire()
        pool.acquire()
        assert pool.remove(records[0].uuid) is records[0]
        assert pool.acquire().display_name == "c"
        assert pool.remove("missing") is None

    def test_concurrent_acquire_distinct(self):
        records = [_record(name=str(i)) for i in range(8)]
        pool = ProviderPool("openai-custom", records)
        with ThreadPoolExecutor(max_workers=8) as executor:
            acquired = list(executor.map(lambda _: pool.acquire(), range(8)))
        assert len({r.uuid for r in acquired}) == 8

    def test_counts(self):
        pool = ProviderPool("openai-custom", [_record(), _record(status=CredentialStatus.DISABLED)])
        assert pool.counts() == {"total": 2, "eligible": 1, "unavailable": 1}


class TestPoolManager:
    """池管理器"""

    def test_acquire_unknown_provider(self):
        with pytest.raises(PoolExhaustedError) as exc:
            _manager().acquire("grok-custom")
        assert exc.value.attempted_providers == ["grok-custom"]
        assert exc.value.http_status == 503

    def test_disable_at_threshold_notifies(self):
        observer = RecordingObserver()
        manager = _manager(count=1, observer=observer, max_error_count=2)
        record = manager.acquire("openai-custom")
        manager.report_failure(record, TransportError("a"))
        assert observer.names() == []
        outcome = manager.report_failure(record, TransportError("b"))
        assert outcome.disabled_now
        assert observer.names() == ["credential_disabled"]
        assert observer.events[0][1]["uuid"] == record.uuid
        assert manager.try_acquire("openai-custom") is None

    def test_observer_errors_swallowed(self):
        manager = _manager(count=1, observer=ExplodingObserver())
        record = manager.acquire("openai-custom")
        assert manager.report_failure(record, AuthError("denied", status_code=401)).disabled_now

    def test_success_resets_error_count(self):
        manager = _manager(count=1)
        record = manager.acquire("openai-custom")
        manager.report_failure(record, TransportError("x"))
        manager.report_success(record)
        assert record.error_count == 0

    def test_success_reset_can_be_disabled(self):
        manager = _manager(count=1, reset_error_count_on_success=False)
        record = manager.acquire("openai-custom")
        manager.report_failure(record, TransportError("x"))
        manager.report_success(record)
        assert record.error_count == 1

    def test_usage_sync_recovers_disabled(self):
        observer = RecordingObserver()
        manager = _manager(count=1, observer=observer)
        record = manager.get_pool("openai-custom").records[0]
        record.disable("manual")
        assert manager.report_usage_sync(record, {"credits": 5}) is True
        assert observer.names() == ["credential_recovered", "refresh_completed"]
        assert manager.acquire("openai-custom") is record

    def test_usage_sync_without_reset(self):
        manager = _manager(count=1, reset_error_count_on_usage_sync=False)
        record = manager.get_pool("openai-custom").records[0]
        record.disable("manual")
        assert manager.report_usage_sync(record) is False
        assert record.status is CredentialStatus.DISABLED

    def test_refresh_failure_never_disables(self):
        observer = RecordingObserver()
        manager = _manager(count=1, observer=observer, max_error_count=2)
        record = manager.get_pool("openai-custom").records[0]
        for _ in range(5):
            manager.report_refresh_failure(record, TransportError("token endpoint down"))
        assert record.status is CredentialStatus.ACTIVE
        assert record.error_count == 5
        assert observer.names() == ["refresh_completed"] * 5
        assert observer.events[0][1]["success"] is False
        assert manager.acquire("openai-custom") is record

    def test_refresh_failure_after_request_failures_stays_acquirable(self):
        manager = _manager(count=1, max_error_count=3)
        record = manager.get_pool("openai-custom").records[0]
        manager.report_failure(record, TransportError("reset"))
        manager.report_failure(record, TransportError("reset"))
        manager.report_refresh_failure(record, TransportError("token endpoint down"))

        assert record.error_count == 3
        assert record.status is CredentialStatus.ACTIVE
        assert manager.acquire("openai-custom") is record

        outcome = manager.report_failure(record, TransportError("reset"))
        assert outcome.disabled_now
        with pytest.raises(PoolExhaustedError):
            manager.acquire("openai-custom")

    def test_loaded_record_over_threshold_is_disabled(self):
        manager = PoolManager(PoolSettings(max_error_count=3))
        record = _record(error_count=3)
        manager.add_credential(record)
        assert record.status is CredentialStatus.DISABLED
        with pytest.raises(PoolExhaustedError):
            manager.acquire("openai-custom")

    def test_stale_acquire_marks_and_notifies_once(self):
        manager = PoolManager(PoolSettings(cron_near_minutes=15))
        record = _record(last_sync_at=time.time() - 3600)
        manager.add_credential(record)
        queued = []
        manager.set_refresh_listener(queued.append)

        assert manager.acquire("openai-custom") is record
        manager.release(record)
        manager.acquire("openai-custom")
        assert record.needs_refresh
        assert queued == [record]

    def test_failing_listener_does_not_block_acquire(self):
        manager = PoolManager()
        manager.add_credential(_record(last_sync_at=None))

        def boom(record):
            raise RuntimeError("queue full")

        manager.set_refresh_listener(boom)
        assert manager.acquire("openai-custom") is not None

    def test_records_needing_refresh(self):
        manager = PoolManager(PoolSettings(cron_near_minutes=1))
        fresh = _record(last_sync_at=1000.0)
        stale = _record(last_sync_at=900.0)
        flagged = _record(last_sync_at=1000.0, needs_refresh=True)
        for record in (fresh, stale, flagged):
            manager.add_credential(record)
        assert set(r.uuid for r in manager.records_needing_refresh(now=1030.0)) == {stale.uuid, flagged.uuid}

    def test_from_config_and_status(self):
        manager = PoolManager.from_config({
            "openai-custom": [{"uuid": "a", "api_key": "k1"}, {"uuid": "b", "api_key": "k2", "isDisabled": True}],
            "grok-custom": [],
        })
        status = manager.status()
        assert status["openai-custom"]["total"] == 2
        assert status["openai-custom"]["eligible"] == 1
        assert status["grok-custom"]["total"] == 0
        assert [c["uuid"] for c in status["openai-custom"]["credentials"]] == ["a", "b"]
        assert manager.has_provider("grok-custom")
        assert manager.get_credential("openai-custom", "a").secret == {"api_key": "k1"}

    def test_remove_credential(self):
        manager = PoolManager.from_config({"openai-custom": [{"uuid": "a"}]})
        assert manager.remove_credential("openai-custom", "a").uuid == "a"
        assert manager.remove_credential("grok-custom", "a") is None
