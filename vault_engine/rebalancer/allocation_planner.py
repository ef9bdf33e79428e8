"""
allocation_planner.py - 바벨 배분 입금 계획 모듈

이 파일은 추천 세트와 현재 잔고/포지션으로 라운드 입금 계획을 만듭니다.

배분 규칙:
1. 고신뢰/저신뢰 그룹별 점수 내림차순 정렬
2. 이미 (더스트 이상) 보유 중인 볼트는 신규 입금 제외 (집중 방지)
3. 빈 슬롯 = 최대 볼트 수 - 현재 보유 수, 고신뢰 우선 배정
4. 볼트당 목표 = 총 자본 × 그룹 비율 / 그룹 전체 추천 수
   (총 자본 = 가용 잔고 + 현재 투자 지분)
5. 가용 잔고가 부족하면 모든 목표를 같은 비율로 축소
6. 선택된 볼트가 없는 그룹의 몫은 다른 그룹으로 재배정 (정책 플래그)

최소 입금액 필터링은 실행 단계(TransferExecutor)에서 처리합니다.

사용법:
    from vault_engine.rebalancer.allocation_planner import AllocationPlanner

    planner = AllocationPlanner()
    plan = planner.build_plan(rec_set, positions, available_balance_usd=1700)
"""

import math
from typing import Optional, Sequence

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logger import logger
from config import settings
from vault_engine.ledger import Position
from vault_engine.recommendations.types import (
    Confidence,
    Recommendation,
    RecommendationSet,
    SuggestedAllocations,
)
from vault_engine.rebalancer.models import BarbellTargets, DepositPlan, DepositTarget


# ===== 상수 정의 =====
FALLBACK_HIGH_PCT = 70.0
FALLBACK_LOW_PCT = 30.0


def round_usd(value: float) -> float:
    return round(value, 2)


def _valid_pct(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 0:
        return None
    return number


def _by_score(recs: Sequence[Recommendation]) -> list[Recommendation]:
    """점수 내림차순 (동점은 원래 순서 유지)"""
    return sorted(recs, key=lambda rec: rec.score, reverse=True)


class AllocationPlanner:
    """
    바벨 배분 입금 계획기

    Attributes:
        max_active: 최대 보유 볼트 수
        default_high_pct: 기본 고신뢰 비율 (%)
        default_low_pct: 기본 저신뢰 비율 (%)
        dust_threshold_usd: 더스트 기준 (USD)
        reassign_empty_group: 빈 그룹 몫 재배정 여부

    Example:
        >>> planner = AllocationPlanner(max_active=10)
        >>> plan = planner.build_plan(rec_set, positions, 84.0)
        >>> [t.deposit_usd for t in plan.targets]
        [84.0]
    """

    def __init__(
        self,
        max_active: Optional[int] = None,
        high_pct: Optional[float] = None,
        low_pct: Optional[float] = None,
        dust_threshold_usd: Optional[float] = None,
        reassign_empty_group: Optional[bool] = None
    ):
        self.max_active = max(1, int(max_active if max_active is not None else settings.DEPOSIT_ACTIVE_COUNT))
        self.default_high_pct = high_pct if high_pct is not None else settings.DEPOSIT_HIGH_PCT
        self.default_low_pct = low_pct if low_pct is not None else settings.DEPOSIT_LOW_PCT
        self.dust_threshold_usd = dust_threshold_usd if dust_threshold_usd is not None else settings.DUST_THRESHOLD_USD
        self.reassign_empty_group = (
            reassign_empty_group if reassign_empty_group is not None
            else settings.DEPOSIT_REASSIGN_EMPTY_GROUP
        )

    # ===== 비율 =====

    def resolve_group_pcts(
        self,
        suggested: Optional[SuggestedAllocations] = None
    ) -> tuple[float, float]:
        """
        그룹 비율 결정 (제안값 우선, 합계 100으로 정규화)

        Returns:
            (high_pct, low_pct)
        """
        high = _valid_pct(self.default_high_pct)
        low = _valid_pct(self.default_low_pct)

        if suggested is not None:
            s_high = _valid_pct(suggested.high_pct)
            s_low = _valid_pct(suggested.low_pct)
            if s_high is not None and s_low is None:
                s_low = max(0.0, 100.0 - s_high)
            elif s_low is not None and s_high is None:
                s_high = max(0.0, 100.0 - s_low)
            if s_high is not None and s_low is not None and s_high + s_low > 0:
                high, low = s_high, s_low

        if high is None or low is None or high + low <= 0:
            return FALLBACK_HIGH_PCT, FALLBACK_LOW_PCT

        total = high + low
        return high * 100.0 / total, low * 100.0 / total

    def compute_barbell_targets(
        self,
        recommendations: RecommendationSet,
        total_capital_usd: float,
        selected_high: Optional[int] = None,
        selected_low: Optional[int] = None
    ) -> BarbellTargets:
        """
        그룹별 볼트당 목표 금액

        선택된 볼트 수가 아니라 그룹 전체 추천 수로 나눕니다.
        선택된 볼트가 없는 그룹의 몫은 다른 그룹으로 재배정하거나
        (정책 플래그 off) unallocated_usd로 보고합니다.

        Args:
            recommendations: 추천 세트
            total_capital_usd: 총 자본 (가용 잔고 + 투자 지분)
            selected_high: 이번 라운드 선택된 고신뢰 볼트 수 (None이면 전체 추천 수)
            selected_low: 이번 라운드 선택된 저신뢰 볼트 수 (None이면 전체 추천 수)
        """
        high_pct, low_pct = self.resolve_group_pcts(recommendations.suggested_allocations)
        high_count = len(recommendations.high_confidence)
        low_count = len(recommendations.low_confidence)
        total_capital_usd = max(0.0, total_capital_usd)

        if selected_high is None:
            selected_high = high_count
        if selected_low is None:
            selected_low = low_count

        high_share, low_share = high_pct, low_pct
        reassigned: Optional[Confidence] = None
        unallocated = 0.0

        if selected_high > 0 and selected_low == 0 and low_pct > 0:
            if self.reassign_empty_group:
                high_share, low_share = high_pct + low_pct, 0.0
                reassigned = Confidence.LOW
            else:
                unallocated = total_capital_usd * low_pct / 100
        elif selected_low > 0 and selected_high == 0 and high_pct > 0:
            if self.reassign_empty_group:
                high_share, low_share = 0.0, high_pct + low_pct
                reassigned = Confidence.HIGH
            else:
                unallocated = total_capital_usd * high_pct / 100

        high_per_vault = total_capital_usd * high_share / 100 / high_count if high_count else 0.0
        low_per_vault = total_capital_usd * low_share / 100 / low_count if low_count else 0.0

        return BarbellTargets(
            total_capital_usd=total_capital_usd,
            high_pct=high_pct,
            low_pct=low_pct,
            high_per_vault_usd=high_per_vault,
            low_per_vault_usd=low_per_vault,
            reassigned_share=reassigned,
            unallocated_usd=unallocated
        )

    # ===== 계획 =====

    def held_vaults(self, positions: Sequence[Position]) -> set[str]:
        """더스트 이상 보유 중인 볼트 주소 (소문자)"""
        return {p.address_key for p in positions if p.equity_usd >= self.dust_threshold_usd}

    def build_plan(
        self,
        recommendations: RecommendationSet,
        positions: Sequence[Position],
        available_balance_usd: float
    ) -> DepositPlan:
        """
        입금 계획 생성

        Args:
            recommendations: 추천 세트
            positions: 현재 보유 포지션
            available_balance_usd: 가용 잔고 (USD)

        Returns:
            DepositPlan (sum(deposit_usd) <= available_balance_usd)
        """
        available = max(0.0, available_balance_usd or 0.0)
        current_invested = sum(max(0.0, p.equity_usd) for p in positions)
        total_capital = available + current_invested

        held = self.held_vaults(positions)

        # 1. 그룹별 후보 (점수순, 제안 개수 상한, 보유 볼트 제외)
        high_candidates = self._candidates(recommendations.high_confidence, held, Confidence.HIGH,
                                           recommendations.suggested_allocations)
        low_candidates = self._candidates(recommendations.low_confidence, held, Confidence.LOW,
                                          recommendations.suggested_allocations)

        # 2. 빈 슬롯 배정 (고신뢰 우선)
        available_slots = max(0, self.max_active - len(held))
        selected_high = high_candidates[:available_slots]
        selected_low = low_candidates[:max(0, available_slots - len(selected_high))]

        # 3. 볼트당 목표 (선택이 없는 그룹의 몫은 재배정 또는 미배정 보고)
        barbell = self.compute_barbell_targets(
            recommendations, total_capital, len(selected_high), len(selected_low)
        )

        # 4. 필요 금액 / 축소 비율
        needed = (
            barbell.high_per_vault_usd * len(selected_high)
            + barbell.low_per_vault_usd * len(selected_low)
        )
        available_for_deposit = min(available, needed)
        scale_factor = available_for_deposit / needed if needed > 0 and available_for_deposit < needed else 1.0

        targets = tuple(
            self._build_target(rec, barbell.per_vault(rec.confidence), scale_factor)
            for rec in selected_high + selected_low
        )

        plan = DepositPlan(
            available_balance_usd=available,
            total_capital_usd=total_capital,
            current_invested_usd=current_invested,
            high_pct=barbell.high_pct,
            low_pct=barbell.low_pct,
            scale_factor=scale_factor,
            targets=targets,
            reassigned_share=barbell.reassigned_share,
            unallocated_usd=barbell.unallocated_usd
        )

        logger.info("📐 입금 계획 생성")
        logger.info(f"   총 자본: ${total_capital:,.2f} (가용 ${available:,.2f} + 투자 ${current_invested:,.2f})")
        logger.info(f"   바벨: {barbell.high_pct:.1f}/{barbell.low_pct:.1f} → 볼트당 "
                    f"고신뢰 ${barbell.high_per_vault_usd:,.2f}, 저신뢰 ${barbell.low_per_vault_usd:,.2f}")
        logger.info(f"   보유 {len(held)}개, 빈 슬롯 {available_slots}개 → "
                    f"고신뢰 {len(selected_high)}개, 저신뢰 {len(selected_low)}개 선택")
        if scale_factor < 1.0:
            logger.info(f"   잔고 부족: 필요 ${needed:,.2f}, 가용 ${available:,.2f} → 축소 비율 {scale_factor:.4f}")
        if barbell.reassigned_share:
            logger.info(f"   {barbell.reassigned_share.value} 그룹 선택 볼트 없음 → 몫 재배정")
        if barbell.unallocated_usd > 0:
            logger.warning(f"   미배정 자본: ${barbell.unallocated_usd:,.2f} (빈 그룹 재배정 비활성)")

        return plan

    def _candidates(
        self,
        recs: Sequence[Recommendation],
        held: set[str],
        confidence: Confidence,
        suggested: Optional[SuggestedAllocations]
    ) -> list[Recommendation]:
        ordered = _by_score(recs)

        limit = None
        if suggested is not None:
            limit = suggested.high_count if confidence == Confidence.HIGH else suggested.low_count
        if limit is not None and limit >= 0:
            ordered = ordered[:limit]

        skipped = [rec for rec in ordered if rec.address_key in held]
        if skipped:
            logger.info(f"   기존 보유로 제외 ({confidence.value}): {len(skipped)}개")
        return [rec for rec in ordered if rec.address_key not in held]

    @staticmethod
    def _build_target(rec: Recommendation, per_vault_usd: float, scale_factor: float) -> DepositTarget:
        return DepositTarget(
            vault_address=rec.vault_address,
            name=rec.name,
            confidence=rec.confidence,
            target_usd=round_usd(per_vault_usd),
            deposit_usd=round_usd(per_vault_usd * scale_factor)
        )
