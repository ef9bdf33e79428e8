"""
scheduler.py - APScheduler 스케줄링 모듈

이 파일은 리밸런싱 라운드의 주기 실행을 관리합니다.

일정:
- 시작 시 원장에서 마지막 입금 시각 조회
- 초기 지연 = max(0, 주기 - (현재 - 마지막 입금)), 입금 이력이 없으면 즉시
- 이후 주기마다 반복 (기본 2일)

중복 실행 방지:
- 프로세스 내 실행 중 플래그 (실행 중 재진입은 로그만 남기고 무시)
- APScheduler max_instances=1, coalesce=True

라운드 예외는 여기서 잡아 로그/알림 후 버리며 타이머는 계속 동작합니다.

사용법:
    from scheduler import RebalanceScheduler

    scheduler = RebalanceScheduler(orchestrator)
    await scheduler.start()
"""

import asyncio
import inspect
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MAX_INSTANCES

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent))

from logger import logger
from config import settings, now_utc
from vault_engine.ledger import LedgerClient
from vault_engine.rebalancer import RebalanceOrchestrator, RoundResult


JOB_ID = "rebalance_round"


def compute_initial_delay(
    interval_seconds: float,
    last_deposit_time: Optional[datetime],
    now: datetime
) -> float:
    """
    첫 라운드까지의 지연 (초)

    Example:
        >>> now = datetime(2024, 1, 3, tzinfo=timezone.utc)
        >>> compute_initial_delay(48 * 3600, now - timedelta(hours=30), now)
        64800.0
    """
    if last_deposit_time is None:
        return 0.0
    elapsed = (now - last_deposit_time).total_seconds()
    return max(0.0, interval_seconds - elapsed)


class RebalanceScheduler:
    """
    리밸런싱 스케줄러

    APScheduler를 사용하여 리밸런싱 라운드를 주기적으로 실행합니다.

    Attributes:
        scheduler: APScheduler 인스턴스
        orchestrator: 라운드 실행기
        is_running: 스케줄러 시작 여부
        round_in_progress: 라운드 실행 중 여부
        on_round_complete: 라운드 성공 후 콜백 (이력 저장/요약 알림)
    """

    def __init__(
        self,
        orchestrator: RebalanceOrchestrator,
        ledger: Optional[LedgerClient] = None,
        interval_ms: Optional[float] = None,
        enabled: Optional[bool] = None,
        dry_run: Optional[bool] = None,
        notifier=None,
        clock: Callable[[], datetime] = now_utc
    ):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.orchestrator = orchestrator
        self.ledger = ledger or orchestrator.ledger
        self.interval_ms = interval_ms if interval_ms is not None else settings.REBALANCE_INTERVAL_MS
        self.enabled = enabled if enabled is not None else settings.REBALANCE_ENABLED
        self.dry_run = dry_run if dry_run is not None else settings.REBALANCE_DRY_RUN
        self.notifier = notifier
        self.clock = clock

        self.is_running = False
        self.round_in_progress = False
        self.initial_delay_seconds: Optional[float] = None
        self.last_run_at: Optional[datetime] = None
        self.last_result: Optional[RoundResult] = None

        # 작업 콜백
        self.on_round_complete: Optional[Callable] = None

        # 이벤트 리스너
        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self.scheduler.add_listener(self._on_job_skipped, EVENT_JOB_MAX_INSTANCES)

        logger.info("리밸런싱 스케줄러 초기화")

    def _on_job_executed(self, event):
        """작업 실행 완료 이벤트"""
        logger.debug(f"작업 완료: {event.job_id}")

    def _on_job_error(self, event):
        """작업 에러 이벤트"""
        logger.error(f"작업 에러: {event.job_id} - {event.exception}")

    def _on_job_skipped(self, event):
        """최대 인스턴스 초과로 건너뛴 실행"""
        logger.warning(f"이전 실행이 끝나지 않아 건너뜀: {event.job_id}")

    @property
    def interval_seconds(self) -> float:
        return float(self.interval_ms) / 1000

    def _interval_is_valid(self) -> bool:
        try:
            interval = float(self.interval_ms)
        except (TypeError, ValueError):
            return False
        return math.isfinite(interval) and interval > 0

    # ===== 스케줄러 제어 =====

    async def start(self) -> bool:
        """
        스케줄러 시작

        Returns:
            스케줄 등록 여부 (비활성/잘못된 주기/이미 실행 중이면 False)
        """
        if self.is_running:
            logger.warning("스케줄러가 이미 실행 중입니다")
            return False

        if not self.enabled:
            logger.info("리밸런싱 비활성화 (REBALANCE_ENABLED=false) - 스케줄 등록 안 함")
            return False

        if not self._interval_is_valid():
            logger.error(f"잘못된 리밸런싱 주기: {self.interval_ms}ms - 스케줄 등록 안 함")
            return False

        now = self.clock()
        last_deposit = await self._get_last_deposit_time()
        delay = compute_initial_delay(self.interval_seconds, last_deposit, now)
        first_run = now + timedelta(seconds=delay)
        self.initial_delay_seconds = delay

        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(seconds=self.interval_seconds, start_date=first_run, timezone=timezone.utc),
            id=JOB_ID,
            name="리밸런싱 라운드",
            next_run_time=first_run,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True
        )
        self.scheduler.start()
        self.is_running = True

        logger.info("🚀 리밸런싱 스케줄러 시작")
        logger.info(f"   주기: {self.interval_seconds / 3600:.1f}시간, 모드: {'드라이런' if self.dry_run else '실전'}")
        if last_deposit:
            logger.info(f"   마지막 입금: {last_deposit.isoformat()} → 첫 실행까지 {delay / 3600:.2f}시간")
        else:
            logger.info("   입금 이력 없음 → 즉시 첫 실행")
        return True

    async def _get_last_deposit_time(self) -> Optional[datetime]:
        """마지막 입금 시각 (조회 실패 시 None)"""
        try:
            return await self.ledger.get_last_deposit_time(self.orchestrator.wallet)
        except Exception as e:
            logger.warning(f"마지막 입금 시각 조회 실패 (이력 없음으로 처리): {e}")
            return None

    def stop(self) -> None:
        """스케줄러 종료"""
        if not self.is_running:
            return

        self.scheduler.shutdown(wait=False)
        self.is_running = False

        logger.info("⏹️ 리밸런싱 스케줄러 종료")

    # ===== 작업 실행 =====

    async def run_once(self) -> Optional[RoundResult]:
        """
        리밸런싱 라운드 1회 실행

        Returns:
            RoundResult (재진입 또는 실패 시 None)
        """
        if self.round_in_progress:
            logger.warning("리밸런싱 라운드가 이미 진행 중입니다 - 이번 실행 건너뜀")
            return None

        self.round_in_progress = True
        try:
            try:
                result = await self.orchestrator.run_round(dry_run=self.dry_run)
            except Exception as e:
                logger.error(f"리밸런싱 라운드 실패: {e}")
                await self._send_error_notification("리밸런싱 라운드", str(e))
                return None

            self.last_run_at = self.clock()
            self.last_result = result

            if self.on_round_complete:
                try:
                    outcome = self.on_round_complete(result)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as e:
                    logger.error(f"라운드 완료 콜백 실패: {e}")

            return result
        finally:
            self.round_in_progress = False

    async def _send_error_notification(self, task: str, error: str) -> None:
        """에러 알림 전송 (동기 HTTP 호출은 워커 스레드에서)"""
        if self.notifier is None:
            return
        try:
            await asyncio.to_thread(self.notifier.send_error_alert, "스케줄 에러", f"{task} 실패: {error}")
        except Exception as e:
            logger.warning(f"에러 알림 전송 실패: {e}")

    # ===== 상태 =====

    def get_next_run_time(self) -> Optional[datetime]:
        """다음 실행 시간 조회"""
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def get_status(self) -> dict:
        """스케줄러 상태 조회"""
        next_run = self.get_next_run_time() if self.is_running else None
        return {
            "is_running": self.is_running,
            "enabled": self.enabled,
            "dry_run": self.dry_run,
            "round_in_progress": self.round_in_progress,
            "interval_ms": self.interval_ms,
            "initial_delay_seconds": self.initial_delay_seconds,
            "next_run": next_run.isoformat() if next_run else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None
        }


# ===== 직접 실행 시 테스트 =====
if __name__ == "__main__":
    from vault_engine.ledger import MockLedgerClient
    from vault_engine.recommendations import RecommendationSet, StaticRecommendationProvider

    async def _demo():
        ledger = MockLedgerClient(balance=1000, last_deposit_time=now_utc() - timedelta(hours=30))
        provider = StaticRecommendationProvider(RecommendationSet((), ()))
        orchestrator = RebalanceOrchestrator(ledger, provider, wallet="0xdemo", withdrawal_delay_ms=0)

        scheduler = RebalanceScheduler(orchestrator, interval_ms=2 * 24 * 3600 * 1000, enabled=True)
        await scheduler.start()
        print(scheduler.get_status())
        scheduler.stop()

    print("=" * 60)
    print("📅 스케줄러 테스트")
    print("=" * 60)
    asyncio.run(_demo())
