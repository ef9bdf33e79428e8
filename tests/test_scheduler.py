"""
test_scheduler.py - 리밸런싱 스케줄러 테스트

재시작 시 초기 지연, 중복 실행 방지, 예외 격리를 검증합니다.
"""

import sys
import asyncio
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import now_utc
from scheduler import RebalanceScheduler, compute_initial_delay
from vault_engine.ledger import MockLedgerClient, TransportError
from vault_engine.recommendations import RecommendationSet, StaticRecommendationProvider
from vault_engine.rebalancer import RebalanceOrchestrator


DAY_MS = 24 * 3600 * 1000


class SlowProvider(StaticRecommendationProvider):
    async def get_recommendations(self):
        await asyncio.sleep(0.01)
        return await super().get_recommendations()


class BrokenLedger(MockLedgerClient):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.broken = True

    async def get_positions(self, wallet):
        if self.broken:
            raise TransportError("ledger down")
        return await super().get_positions(wallet)


class FakeNotifier:
    def __init__(self):
        self.alerts = []
        self.threads = []

    def send_error_alert(self, error_type, message, details=None):
        self.alerts.append((error_type, message))
        self.threads.append(threading.get_ident())
        return True


def make_scheduler(ledger=None, provider=None, **kwargs):
    ledger = ledger or MockLedgerClient(balance=100.0)
    provider = provider or StaticRecommendationProvider(RecommendationSet())
    orchestrator = RebalanceOrchestrator(
        ledger, provider, wallet="0xwallet", withdrawal_delay_ms=0, dry_run=True
    )
    params = dict(interval_ms=2 * DAY_MS, enabled=True, dry_run=True)
    params.update(kwargs)
    return RebalanceScheduler(orchestrator, **params)


def test_initial_delay_after_restart():
    """마지막 입금 30시간 전, 주기 48시간 → 18시간 후 첫 실행"""
    now = datetime(2024, 5, 3, 12, 0, tzinfo=timezone.utc)

    delay = compute_initial_delay(48 * 3600, now - timedelta(hours=30), now)

    assert delay == 18 * 3600


def test_initial_delay_without_history_or_overdue():
    now = datetime(2024, 5, 3, 12, 0, tzinfo=timezone.utc)

    assert compute_initial_delay(48 * 3600, None, now) == 0.0
    assert compute_initial_delay(48 * 3600, now - timedelta(days=5), now) == 0.0


def test_start_schedules_from_last_deposit():
    ledger = MockLedgerClient(last_deposit_time=now_utc() - timedelta(hours=30))
    scheduler = make_scheduler(ledger)

    async def scenario():
        started = await scheduler.start()
        await asyncio.sleep(0)
        status = scheduler.get_status()
        scheduler.stop()
        return started, status

    started, status = asyncio.run(scenario())

    assert started is True
    assert abs(status["initial_delay_seconds"] - 18 * 3600) < 5
    assert status["next_run"] is not None
    assert status["is_running"] is True
    assert scheduler.is_running is False


def test_start_is_idempotent():
    ledger = MockLedgerClient(last_deposit_time=now_utc() - timedelta(hours=1))
    scheduler = make_scheduler(ledger)

    async def scenario():
        first = await scheduler.start()
        second = await scheduler.start()
        jobs = len(scheduler.scheduler.get_jobs())
        scheduler.stop()
        return first, second, jobs

    assert asyncio.run(scenario()) == (True, False, 1)


def test_failed_deposit_lookup_means_no_history():
    ledger = MockLedgerClient(last_deposit_time=now_utc())
    ledger.fail_last_deposit_lookup = True
    scheduler = make_scheduler(ledger)

    assert asyncio.run(scheduler._get_last_deposit_time()) is None


def test_disabled_scheduler_stays_inert():
    scheduler = make_scheduler(enabled=False)

    assert asyncio.run(scheduler.start()) is False
    assert scheduler.is_running is False
    assert scheduler.scheduler.get_jobs() == []


def test_invalid_interval_stays_inert():
    for interval in (0, -1, float("inf"), float("nan")):
        scheduler = make_scheduler(interval_ms=interval)
        assert asyncio.run(scheduler.start()) is False
        assert scheduler.is_running is False


def test_overlapping_run_is_skipped():
    """라운드 진행 중 재진입은 실행하지 않고 None"""
    provider = SlowProvider(RecommendationSet())
    scheduler = make_scheduler(provider=provider)

    async def scenario():
        return await asyncio.gather(scheduler.run_once(), scheduler.run_once())

    first, second = asyncio.run(scenario())

    assert first is not None
    assert second is None
    assert provider.calls == 1
    assert scheduler.round_in_progress is False


def test_round_exception_is_contained():
    """라운드 예외는 알림 후 버리고 다음 실행은 정상 진행"""
    ledger = BrokenLedger(balance=50.0)
    notifier = FakeNotifier()
    scheduler = make_scheduler(ledger, notifier=notifier)

    assert asyncio.run(scheduler.run_once()) is None
    assert scheduler.round_in_progress is False
    assert len(notifier.alerts) == 1
    assert "ledger down" in notifier.alerts[0][1]
    # 텔레그램 전송은 이벤트 루프 스레드를 막지 않음
    assert notifier.threads[0] != threading.get_ident()

    ledger.broken = False
    assert asyncio.run(scheduler.run_once()) is not None


def test_round_complete_callback():
    received = []

    async def on_complete(result):
        received.append(result)

    scheduler = make_scheduler()
    scheduler.on_round_complete = on_complete

    result = asyncio.run(scheduler.run_once())

    assert received == [result]
    assert scheduler.last_result is result


def test_callback_failure_does_not_escape():
    def on_complete(result):
        raise RuntimeError("history store unavailable")

    scheduler = make_scheduler()
    scheduler.on_round_complete = on_complete

    assert asyncio.run(scheduler.run_once()) is not None
