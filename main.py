"""
main.py - 볼트 리밸런싱 엔진 메인 엔트리

이 파일은 리밸런싱 시스템 구성요소를 조립하고 실행합니다.

기능:
- 시스템 초기화 (원장 / 추천 세트 / 오케스트레이터 / 스케줄러)
- 주기 실행 (기본 2일, 재시작 시 마지막 입금 기준 보정)
- 1회 즉시 실행
- 라운드 이력 저장 및 텔레그램 요약

실행 방법:
    python main.py               # 스케줄러 실행 (Ctrl+C 종료)
    python main.py --once        # 라운드 1회 즉시 실행
    python main.py --history 10  # 최근 라운드 이력 출력
    python main.py --settings    # 현재 설정 출력
    python main.py --live        # 실전 전송 (주의!)
    python main.py --mock        # 모의 원장 사용

라운드 흐름:
    비활성 볼트 출금 → 추천 볼트 익절 → 추천 제외 볼트 출금
    → 정산 대기 → 잔고 재조회 → 바벨 배분 입금
"""

import asyncio
import argparse
import importlib
import signal
import sys
from typing import Callable, Optional

from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent))

from logger import logger
from config import settings, now_utc, print_settings
from database import Database, get_database
from scheduler import RebalanceScheduler

from vault_engine.ledger import (
    ConfigurationError,
    HyperliquidLedgerClient,
    LedgerClient,
    MockLedgerClient,
)
from vault_engine.recommendations import (
    CachedRecommendationProvider,
    FileRecommendationProvider,
    HttpRecommendationProvider,
    RecommendationProvider,
    TTLCache,
)
from vault_engine.rebalancer import RebalanceOrchestrator, RoundResult
from vault_engine.reporter import TelegramNotifier


MOCK_WALLET = "0x0000000000000000000000000000000000000001"


def load_signer(path: str) -> Callable:
    """
    서명 함수 로드

    Args:
        path: "패키지.모듈:함수" 또는 "패키지.모듈.함수"

    Raises:
        ConfigurationError: 모듈/함수를 찾을 수 없음
    """
    module_name, _, attr = path.partition(":")
    if not attr:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ConfigurationError(f"잘못된 LEDGER_SIGNER 경로: {path}")

    try:
        module = importlib.import_module(module_name)
        signer = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"서명 함수 로드 실패 ({path}): {e}") from e

    if not callable(signer):
        raise ConfigurationError(f"서명 함수가 호출 가능하지 않습니다: {path}")
    return signer


def build_provider() -> RecommendationProvider:
    """설정에 따른 추천 세트 제공자 (TTL 캐시 포함)"""
    if settings.RECOMMENDATIONS_URL:
        inner = HttpRecommendationProvider(settings.RECOMMENDATIONS_URL)
    else:
        inner = FileRecommendationProvider(settings.RECOMMENDATIONS_PATH)
    return CachedRecommendationProvider(inner, TTLCache(settings.RECOMMENDATIONS_TTL_SECONDS))


def build_ledger(dry_run: bool, use_mock: bool = False) -> LedgerClient:
    """
    원장 클라이언트 생성

    실전 모드에서는 지갑과 서명 함수가 모두 필요합니다.
    """
    if use_mock:
        return MockLedgerClient(balance=1000.0)

    signer = load_signer(settings.LEDGER_SIGNER) if settings.LEDGER_SIGNER else None
    if not dry_run:
        if not settings.WALLET:
            raise ConfigurationError("실전 모드에는 WALLET 설정이 필요합니다")
        if signer is None:
            raise ConfigurationError("실전 모드에는 LEDGER_SIGNER 설정이 필요합니다")

    return HyperliquidLedgerClient(signer=signer)


class RebalanceSystem:
    """
    볼트 리밸런싱 시스템

    Example:
        >>> system = RebalanceSystem(dry_run=True)
        >>> await system.run_once()
    """

    def __init__(
        self,
        dry_run: Optional[bool] = None,
        use_mock: bool = False
    ):
        """
        시스템 초기화

        Args:
            dry_run: 드라이런 여부 (None이면 설정값)
            use_mock: 모의 원장 사용
        """
        self.dry_run = dry_run if dry_run is not None else settings.REBALANCE_DRY_RUN
        self.use_mock = use_mock

        wallet = settings.WALLET or (MOCK_WALLET if use_mock else "")

        # 컴포넌트
        self.ledger = build_ledger(self.dry_run, use_mock)
        self.provider = build_provider()
        self.orchestrator = RebalanceOrchestrator(
            self.ledger, self.provider, wallet=wallet, dry_run=self.dry_run
        )
        self.notifier = TelegramNotifier()
        self.scheduler = RebalanceScheduler(
            self.orchestrator, dry_run=self.dry_run, notifier=self.notifier
        )
        self.scheduler.on_round_complete = self._on_round_complete
        self.db = Database()

        # 상태
        self.is_running = False

        logger.info(f"🚀 리밸런싱 시스템 초기화 ({'드라이런' if self.dry_run else '실전'})")
        logger.info(f"   원장: {'모의' if use_mock else 'Hyperliquid'}, 지갑: {wallet[:6]}...{wallet[-4:]}")

    def _signal_handler(self, signum, frame):
        """시그널 핸들러 (Ctrl+C 등)"""
        logger.info("\n시스템 종료 신호 수신...")
        self.is_running = False

    # ===== 시스템 시작/종료 =====

    async def start(self) -> None:
        """시스템 시작 (종료 신호까지 스케줄러 실행)"""
        logger.info("=" * 70)
        logger.info("🚀 볼트 리밸런싱 엔진")
        logger.info("=" * 70)
        logger.info(f"   시작 시간: {now_utc().strftime('%Y-%m-%d %H:%M:%S')} UTC")
        logger.info(f"   모드: {'드라이런' if self.dry_run else '실전'}")
        logger.info("=" * 70)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.is_running = True
        self._init_database()
        await asyncio.to_thread(self.notifier.send_system_start, self.dry_run)

        if not await self.scheduler.start():
            logger.warning("스케줄이 등록되지 않았습니다 (설정 확인)")

        logger.info("\n✅ 시스템 시작 완료")
        logger.info("   종료하려면 Ctrl+C를 누르세요.\n")

        # 메인 루프
        try:
            while self.is_running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self, reason: str = "정상 종료") -> None:
        """시스템 종료"""
        logger.info("\n시스템 종료 중...")

        self.is_running = False
        self.scheduler.stop()
        await self.ledger.aclose()

        if self.db.conn:
            self.db.close()

        await asyncio.to_thread(self.notifier.send_system_stop, reason)
        logger.info("✅ 시스템 종료 완료")

    def _init_database(self) -> None:
        """데이터베이스 초기화 (실패해도 라운드는 진행)"""
        try:
            self.db.connect()
            self.db.init_tables()
        except Exception as e:
            logger.error(f"데이터베이스 초기화 실패: {e}")

    # ===== 라운드 =====

    async def run_once(self) -> Optional[RoundResult]:
        """라운드 1회 즉시 실행"""
        logger.info("🔧 수동 실행 모드")
        self._init_database()
        try:
            return await self.scheduler.run_once()
        finally:
            await self.ledger.aclose()
            if self.db.conn:
                self.db.close()

    async def _on_round_complete(self, result: RoundResult) -> None:
        """라운드 완료 후 이력 저장 + 요약 전송 (텔레그램은 워커 스레드에서)"""
        if self.db.conn:
            round_id = self.db.save_round(result)
            logger.info(f"📁 라운드 이력 저장: #{round_id}")
        await asyncio.to_thread(self.notifier.send_round_summary, result)


def show_history(limit: int = 10, db_path: Optional[str] = None) -> list[dict]:
    """최근 라운드 이력 출력 (원장/지갑 설정 불필요)"""
    db = get_database(db_path)
    try:
        rounds = db.get_recent_rounds(limit)
    finally:
        db.close()

    print(f"\n📜 최근 라운드 {len(rounds)}건")
    for item in rounds:
        mode = "DRY" if item["dry_run"] else "LIVE"
        print(
            f"  #{item['id']} {item['started_at'][:16]} [{mode}] "
            f"출금 {item['withdrawal_count']} / 익절 {item['tp_withdrawal_count']} / "
            f"입금 {item['deposits_submitted']} (${item['total_deposit_usd']:,.2f})"
        )
        for warning in item["warnings"]:
            print(f"      ⚠️ {warning}")
    return rounds


# ===== CLI 인터페이스 =====

def parse_args(argv=None):
    """명령줄 인수 파싱"""
    parser = argparse.ArgumentParser(
        description="볼트 리밸런싱 엔진"
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="라운드 1회 즉시 실행 (스케줄러 없이)"
    )

    parser.add_argument(
        "--history",
        type=int,
        metavar="N",
        help="최근 N개 라운드 이력 출력"
    )

    parser.add_argument(
        "--settings",
        action="store_true",
        help="현재 설정 출력"
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--live",
        dest="dry_run",
        action="store_false",
        default=None,
        help="실전 전송 모드 (주의!)"
    )
    mode.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        default=None,
        help="드라이런 모드 (전송 없음)"
    )

    parser.add_argument(
        "--mock",
        action="store_true",
        help="모의 원장 사용"
    )

    return parser.parse_args(argv)


async def main():
    """메인 함수"""
    args = parse_args()

    if args.settings:
        print_settings()
        return

    if args.history is not None:
        show_history(args.history)
        return

    system = RebalanceSystem(dry_run=args.dry_run, use_mock=args.mock)

    if args.once:
        result = await system.run_once()
        if result is not None:
            print(system.notifier.format_round_summary(result))
    else:
        await system.start()


# ===== 엔트리 포인트 =====

def run() -> None:
    """콘솔 스크립트 엔트리"""
    print("=" * 70)
    print("🚀 볼트 리밸런싱 엔진")
    print("=" * 70)

    try:
        asyncio.run(main())
    except ConfigurationError as e:
        logger.error(f"설정 오류: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
