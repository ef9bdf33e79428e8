"""
orchestrator.py - 리밸런싱 라운드 실행 모듈

이 파일은 리밸런싱 1라운드를 순서대로 실행합니다.

라운드 순서 (우선순위 고정):
1. 비활성 볼트 전량 출금 (포지션 0개 + 7일 거래 0건, 손익/추천 무관)
2. 추천 유지 볼트 부분 익절 (ROE >= 10%, 바벨 목표 초과분)
3. 추천 제외 볼트 전량 출금 (ROE >= 2%, 미만은 보유 유지)
4. 출금 제출 건이 있으면 정산 대기 (기본 60초)
5. 잔고 재조회 → 입금 계획 → 입금 실행

각 포지션은 위 규칙 중 하나로만 분류되며, 개별 실패는 라운드를 중단하지 않습니다.

사용법:
    from vault_engine.rebalancer.orchestrator import RebalanceOrchestrator

    orchestrator = RebalanceOrchestrator(ledger, provider)
    result = await orchestrator.run_round(dry_run=True)
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logger import logger, log_execution_time, log_with_context, ROUND_TASK
from config import settings, now_utc
from vault_engine.ledger import ConfigurationError, LedgerClient, Position
from vault_engine.recommendations.provider import RecommendationProvider
from vault_engine.recommendations.types import RecommendationSet
from vault_engine.rebalancer.allocation_planner import AllocationPlanner
from vault_engine.rebalancer.models import (
    BarbellTargets,
    RoundResult,
    TransferAction,
    TransferStatus,
)
from vault_engine.rebalancer.transfer_executor import TransferExecutor


class ExitRule(Enum):
    """출금 규칙 (우선순위 순)"""
    INACTIVE = "inactive"
    TAKE_PROFIT = "take-profit"
    NOT_RECOMMENDED = "not-recommended"


@dataclass(frozen=True)
class WithdrawalDecision:
    """포지션별 출금 결정"""
    position: Position
    rule: ExitRule
    target_usd: Optional[float] = None


class RebalanceOrchestrator:
    """
    리밸런싱 라운드 오케스트레이터

    Attributes:
        ledger: 원장 클라이언트
        provider: 추천 세트 제공자
        wallet: 대상 지갑 주소
        executor: 전송 실행기
        planner: 입금 계획기

    Example:
        >>> orchestrator = RebalanceOrchestrator(MockLedgerClient(), provider, wallet="0x1")
        >>> result = await orchestrator.run_round(dry_run=True)
        >>> result.deposits.submitted
        0
    """

    def __init__(
        self,
        ledger: LedgerClient,
        provider: RecommendationProvider,
        wallet: Optional[str] = None,
        executor: Optional[TransferExecutor] = None,
        planner: Optional[AllocationPlanner] = None,
        take_profit_roe_pct: Optional[float] = None,
        min_exit_roe_pct: Optional[float] = None,
        withdrawal_delay_ms: Optional[int] = None,
        include_locked: Optional[bool] = None,
        dry_run: Optional[bool] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = now_utc
    ):
        self.wallet = wallet or settings.WALLET
        if not self.wallet:
            raise ConfigurationError("WALLET이 설정되지 않았습니다")

        self.ledger = ledger
        self.provider = provider
        self.executor = executor or TransferExecutor(ledger)
        self.planner = planner or AllocationPlanner()
        self.take_profit_roe_pct = (
            take_profit_roe_pct if take_profit_roe_pct is not None else settings.TAKE_PROFIT_ROE_PCT
        )
        self.min_exit_roe_pct = min_exit_roe_pct if min_exit_roe_pct is not None else settings.EXIT_MIN_ROE_PCT
        self.withdrawal_delay_ms = (
            withdrawal_delay_ms if withdrawal_delay_ms is not None else settings.REBALANCE_WITHDRAWAL_DELAY_MS
        )
        self.include_locked = include_locked if include_locked is not None else settings.REBALANCE_INCLUDE_LOCKED
        self.dry_run = dry_run if dry_run is not None else settings.REBALANCE_DRY_RUN
        self.sleep = sleep
        self.clock = clock

    # ===== 분류 =====

    def classify_positions(
        self,
        positions: Sequence[Position],
        recommendations: RecommendationSet,
        barbell: BarbellTargets
    ) -> list[WithdrawalDecision]:
        """
        포지션별 출금 규칙 결정 (규칙 우선순위대로 첫 매칭만)

        Returns:
            출금 대상 결정 리스트 (INACTIVE → TAKE_PROFIT → NOT_RECOMMENDED 순)
        """
        recommended = recommendations.addresses()
        inactive, take_profit, not_recommended = [], [], []

        for position in positions:
            # 1. 비활성 볼트
            if position.is_inactive:
                inactive.append(WithdrawalDecision(position, ExitRule.INACTIVE))
                continue

            roe = position.roe_pct

            # 2. 추천 유지 볼트 부분 익절
            if position.address_key in recommended:
                if roe is None or roe < self.take_profit_roe_pct:
                    continue
                confidence = recommendations.confidence_of(position.vault_address)
                target_usd = barbell.per_vault(confidence)
                if position.equity_usd <= target_usd:
                    logger.debug(f"익절 불필요 (목표 이하): {position.vault_address} "
                                 f"${position.equity_usd:,.2f} <= ${target_usd:,.2f}")
                    continue
                take_profit.append(WithdrawalDecision(position, ExitRule.TAKE_PROFIT, target_usd))
                continue

            # 3. 추천 제외 볼트
            if self._should_exit(position):
                not_recommended.append(WithdrawalDecision(position, ExitRule.NOT_RECOMMENDED))
            else:
                logger.info(f"출금 보류 (ROE 기준 미달): {position.vault_address} ROE={roe}")

        return inactive + take_profit + not_recommended

    def _should_exit(self, position: Position) -> bool:
        """추천 제외 볼트 출금 여부 (기준 0 이하면 수익 중일 때만)"""
        roe = position.roe_pct
        if self.min_exit_roe_pct > 0:
            return roe is not None and roe >= self.min_exit_roe_pct
        if position.pnl_usd is not None:
            return position.pnl_usd > 0
        return roe is not None and roe > 0

    # ===== 라운드 실행 =====

    @log_execution_time
    async def run_round(
        self,
        dry_run: Optional[bool] = None,
        include_locked: Optional[bool] = None
    ) -> RoundResult:
        """
        리밸런싱 1라운드 실행

        Args:
            dry_run: 드라이런 여부 (None이면 설정값)
            include_locked: 잠금 볼트 출금 시도 여부

        Returns:
            RoundResult
        """
        dry_run = self.dry_run if dry_run is None else dry_run
        include_locked = self.include_locked if include_locked is None else include_locked
        result = RoundResult(started_at=self.clock(), dry_run=dry_run)
        round_log = log_with_context(ROUND_TASK, dry_run=dry_run, started_at=result.started_at.isoformat())

        round_log.info("=" * 60)
        round_log.info(f"🔄 리밸런싱 라운드 시작 ({'드라이런' if dry_run else '실전'})")
        round_log.info("=" * 60)

        # 1. 입력 스냅샷
        recommendations = await self.provider.get_recommendations()
        positions = await self.ledger.get_positions(self.wallet)
        balance = await self.ledger.get_available_balance(self.wallet)
        result.recommended = sorted(recommendations.addresses())

        invested = sum(max(0.0, p.equity_usd) for p in positions)
        barbell = self.planner.compute_barbell_targets(recommendations, balance + invested)

        round_log.info(f"   추천: {len(result.recommended)}개, 보유: {len(positions)}개, 가용 잔고: ${balance:,.2f}")

        # 2. 출금 단계
        for decision in self.classify_positions(positions, recommendations, barbell):
            action = await self._withdraw(decision, dry_run, include_locked)
            if decision.rule == ExitRule.TAKE_PROFIT:
                result.tp_withdrawals.append(action)
            else:
                result.withdrawals.append(action)

        # 3. 정산 대기
        submitted = [a for a in result.all_withdrawals if a.status == TransferStatus.SUBMITTED]
        if submitted and self.withdrawal_delay_ms > 0:
            round_log.info(f"⏳ 출금 정산 대기 {self.withdrawal_delay_ms / 1000:.0f}초 ({len(submitted)}건 제출)")
            await self.sleep(self.withdrawal_delay_ms / 1000)

        # 4. 입금 단계 (출금 반영된 잔고로 재계산)
        if submitted:
            positions = await self.ledger.get_positions(self.wallet)
            balance = await self.ledger.get_available_balance(self.wallet)

        plan = self.planner.build_plan(recommendations, positions, balance)
        result.plan = plan
        if plan.unallocated_usd > 0:
            result.warnings.append(
                f"unallocated-group-share: ${plan.unallocated_usd:,.2f} not assigned (empty confidence group)"
            )
        if plan.reassigned_share is not None:
            result.warnings.append(
                f"reassigned-group-share: {plan.reassigned_share.value} share moved to the other group"
            )
        for warning in result.warnings:
            round_log.warning(f"⚠️ {warning}")

        result.deposits = await self.executor.execute_deposits(plan, dry_run=dry_run)
        result.finished_at = self.clock()

        round_log.info("=" * 60)
        round_log.info("✅ 리밸런싱 라운드 완료")
        round_log.info(f"   출금: {len(result.withdrawals)}건, 익절: {len(result.tp_withdrawals)}건")
        round_log.info(f"   입금: 제출 {result.deposits.submitted}건, 건너뜀 {result.deposits.skipped}건, "
                       f"오류 {result.deposits.errors}건")
        round_log.info("=" * 60)

        return result

    async def _withdraw(
        self,
        decision: WithdrawalDecision,
        dry_run: bool,
        include_locked: bool
    ) -> TransferAction:
        """출금 1건 (예외는 해당 건의 error로 기록하고 계속)"""
        position = decision.position
        logger.info(f"💸 출금 [{decision.rule.value}]: {position.vault_name or position.vault_address} "
                    f"${position.equity_usd:,.2f} (ROE={position.roe_pct})")
        try:
            if decision.rule == ExitRule.TAKE_PROFIT:
                return await self.executor.withdraw_partial(
                    position, decision.target_usd, dry_run=dry_run, include_locked=include_locked
                )
            return await self.executor.withdraw_full(
                position, dry_run=dry_run, include_locked=include_locked, reason=decision.rule.value
            )
        except Exception as e:
            logger.error(f"출금 처리 중 오류: {position.vault_address} - {e}")
            return TransferAction(position.vault_address, 0, TransferStatus.ERROR,
                                  reason=decision.rule.value, error=str(e))
