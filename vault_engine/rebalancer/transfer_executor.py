"""
transfer_executor.py - 볼트 입금/출금 실행 모듈

이 파일은 원장에 대한 단일 입금/출금을 실행합니다.

주요 기능:
- 입금 (최소 금액 검사, 드라이런, 단일 제출)
- 전량 출금 (잠금 검사, 안전 버퍼, 금액 축소 재시도)
- 부분 출금 (목표 지분까지 초과분만 출금)
- 입금 계획 일괄 실행

상태:
    skipped   - 시도하지 않음 (0원, 최소액 미만, 잠금, 목표 도달)
    prepared  - 드라이런 (계산만, 제출 안 함)
    submitted - 원장이 수락
    error     - 재시도 소진 또는 재시도 불가 오류

금액 축소 재시도:
    지분 부족 오류일 때만 원 요청 금액의 95% → 90% → ... → 50%로 재시도
    $1 미만으로 내려가면 중단

사용법:
    from vault_engine.rebalancer.transfer_executor import TransferExecutor

    executor = TransferExecutor(ledger)
    action = await executor.withdraw_full(position, dry_run=False)
"""

import math
from datetime import datetime
from typing import Callable, Optional

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logger import logger, get_transfer_logger
from config import settings, now_utc
from vault_engine.ledger import InsufficientEquityError, LedgerClient, Position, USD_MICROS
from vault_engine.rebalancer.models import (
    DepositExecutionResult,
    DepositPlan,
    SkipReason,
    TransferAction,
    TransferStatus,
)


# ===== 상수 정의 =====
WITHDRAWAL_RETRY_FRACTIONS = (0.95, 0.90, 0.85, 0.80, 0.75, 0.70, 0.60, 0.50)
TAKE_PROFIT_REASON = "take-profit"

transfer_log = get_transfer_logger()


def to_usd_micros(amount_usd: float, buffer_bps: float = 0) -> int:
    """
    USD 금액을 micro-USD 정수로 변환 (버퍼 차감 후 내림)

    Example:
        >>> to_usd_micros(100.0, buffer_bps=10)
        99900000
    """
    if amount_usd is None or not math.isfinite(amount_usd) or amount_usd <= 0:
        return 0
    buffered = amount_usd * (1 - buffer_bps / 10_000)
    return max(0, math.floor(buffered * USD_MICROS))


class TransferExecutor:
    """
    단일 전송 실행기

    Attributes:
        ledger: 원장 클라이언트
        min_deposit_usd: 최소 입금액 (USD)
        buffer_bps: 출금 안전 버퍼 (bps)
        min_retry_usd: 재시도 최소 금액 (USD)

    Example:
        >>> executor = TransferExecutor(MockLedgerClient(balance=100))
        >>> action = await executor.deposit("0xabc", 84.0, dry_run=True)
        >>> action.status
        <TransferStatus.PREPARED: 'prepared'>
    """

    def __init__(
        self,
        ledger: LedgerClient,
        min_deposit_usd: Optional[float] = None,
        buffer_bps: Optional[float] = None,
        min_retry_usd: Optional[float] = None,
        clock: Callable[[], datetime] = now_utc
    ):
        self.ledger = ledger
        self.min_deposit_usd = max(0.0, min_deposit_usd if min_deposit_usd is not None else settings.MIN_DEPOSIT_USD)
        self.buffer_bps = buffer_bps if buffer_bps is not None else settings.WITHDRAW_BUFFER_BPS
        self.min_retry_usd = min_retry_usd if min_retry_usd is not None else settings.WITHDRAW_MIN_RETRY_USD
        self.clock = clock

    # ===== 입금 =====

    async def deposit(
        self,
        vault_address: str,
        amount_usd: float,
        dry_run: bool = True
    ) -> TransferAction:
        """
        볼트 입금 (재시도 없음)

        Args:
            vault_address: 볼트 주소
            amount_usd: 입금액 (USD)
            dry_run: 드라이런 여부

        Returns:
            TransferAction
        """
        usd_micros = to_usd_micros(amount_usd)

        if usd_micros <= 0:
            return TransferAction(vault_address, usd_micros, TransferStatus.SKIPPED,
                                  reason=SkipReason.ZERO_AMOUNT)

        if amount_usd < self.min_deposit_usd:
            logger.info(f"입금 건너뜀 (최소액 미만): {vault_address} ${amount_usd:,.2f} < ${self.min_deposit_usd:,.2f}")
            return TransferAction(vault_address, usd_micros, TransferStatus.SKIPPED,
                                  reason=SkipReason.BELOW_MINIMUM)

        if dry_run:
            transfer_log.info(f"[드라이런] 입금 준비: {vault_address} ${amount_usd:,.2f}")
            return TransferAction(vault_address, usd_micros, TransferStatus.PREPARED)

        try:
            await self._transfer(vault_address, True, usd_micros)
        except Exception as e:
            logger.warning(f"입금 실패: {vault_address} - {e}")
            return TransferAction(vault_address, usd_micros, TransferStatus.ERROR, error=str(e))

        transfer_log.info(f"✅ 입금 제출: {vault_address} ${usd_micros / USD_MICROS:,.2f}")
        return TransferAction(vault_address, usd_micros, TransferStatus.SUBMITTED)

    async def execute_deposits(
        self,
        plan: DepositPlan,
        dry_run: bool = True
    ) -> DepositExecutionResult:
        """
        입금 계획 순차 실행

        개별 입금 실패는 나머지 입금을 중단시키지 않습니다.
        """
        result = DepositExecutionResult(dry_run=dry_run, total=len(plan.targets))

        for i, target in enumerate(plan.targets, 1):
            logger.info(
                f"[{i}/{len(plan.targets)}] 입금: {target.name or target.vault_address} "
                f"({target.confidence.value}) ${target.deposit_usd:,.2f}"
            )
            action = await self.deposit(target.vault_address, target.deposit_usd, dry_run=dry_run)
            result.record(action)

        logger.info(
            f"입금 실행 완료: 제출 {result.submitted}건, 건너뜀 {result.skipped}건, "
            f"오류 {result.errors}건 / 총 {result.total}건"
        )
        return result

    # ===== 출금 =====

    async def withdraw_full(
        self,
        position: Position,
        dry_run: bool = True,
        include_locked: bool = False,
        reason: Optional[str] = None
    ) -> TransferAction:
        """
        볼트 전량 출금

        Args:
            position: 보유 포지션
            dry_run: 드라이런 여부
            include_locked: 잠금 기간 무시 여부
            reason: 결과에 기록할 출금 사유

        Returns:
            TransferAction
        """
        skipped = self._check_deposited(position) or self._check_locked(position, include_locked)
        if skipped:
            return skipped

        buffered = to_usd_micros(position.equity_usd, self.buffer_bps)
        usd_micros = buffered if buffered > 0 else to_usd_micros(position.equity_usd)

        return await self._withdraw(position, usd_micros, dry_run, reason)

    async def withdraw_partial(
        self,
        position: Position,
        target_usd: float,
        dry_run: bool = True,
        include_locked: bool = False
    ) -> TransferAction:
        """
        목표 지분까지 초과분만 출금 (익절)

        Args:
            position: 보유 포지션
            target_usd: 출금 후 남길 목표 지분 (USD)
        """
        skipped = self._check_deposited(position) or self._check_locked(position, include_locked)
        if skipped:
            return skipped

        if position.equity_usd <= target_usd:
            return TransferAction(
                position.vault_address, 0, TransferStatus.SKIPPED,
                reason=SkipReason.ALREADY_AT_TARGET,
                equity_usd=position.equity_usd
            )

        usd_micros = to_usd_micros(position.equity_usd - target_usd, self.buffer_bps)
        return await self._withdraw(position, usd_micros, dry_run, TAKE_PROFIT_REASON)

    @staticmethod
    def _check_deposited(position: Position) -> Optional[TransferAction]:
        """지분이 없는 볼트 (이미 전량 출금됨 등)"""
        if position.equity_usd <= 0:
            logger.info(f"출금 건너뜀 (지분 없음): {position.vault_address}")
            return TransferAction(
                position.vault_address, 0, TransferStatus.SKIPPED,
                reason=SkipReason.NOT_DEPOSITED,
                equity_usd=position.equity_usd
            )
        return None

    def _check_locked(self, position: Position, include_locked: bool) -> Optional[TransferAction]:
        if position.is_locked(self.clock()) and not include_locked:
            logger.info(f"출금 건너뜀 (잠금): {position.vault_address} ~ {position.locked_until}")
            return TransferAction(
                position.vault_address, 0, TransferStatus.SKIPPED,
                reason=SkipReason.LOCKED,
                equity_usd=position.equity_usd,
                locked_until=position.locked_until
            )
        return None

    async def _withdraw(
        self,
        position: Position,
        usd_micros: int,
        dry_run: bool,
        reason: Optional[str]
    ) -> TransferAction:
        """금액 계산 이후 공통 출금 경로"""
        common = dict(equity_usd=position.equity_usd, locked_until=position.locked_until)

        if usd_micros <= 0:
            return TransferAction(position.vault_address, 0, TransferStatus.SKIPPED,
                                  reason=SkipReason.ZERO_AMOUNT, **common)

        if dry_run:
            transfer_log.info(f"[드라이런] 출금 준비: {position.vault_address} ${usd_micros / USD_MICROS:,.2f} ({reason or 'full'})")
            return TransferAction(position.vault_address, usd_micros, TransferStatus.PREPARED,
                                  reason=reason, **common)

        status, actual_micros, error = await self._submit_with_ladder(position.vault_address, usd_micros)
        if status == TransferStatus.SUBMITTED:
            return TransferAction(position.vault_address, actual_micros, status, reason=reason, **common)
        return TransferAction(position.vault_address, usd_micros, status, reason=reason, error=error, **common)

    async def _submit_with_ladder(
        self,
        vault_address: str,
        initial_micros: int
    ) -> tuple[TransferStatus, int, Optional[str]]:
        """
        출금 제출 + 지분 부족 시 금액 축소 재시도

        시도 금액은 엄격하게 감소하며, 첫 성공 또는 지분 부족 외
        오류에서 중단합니다.

        Returns:
            (상태, 실제 제출 금액, 오류 메시지)
        """
        try:
            await self._transfer(vault_address, False, initial_micros)
            transfer_log.info(f"✅ 출금 제출: {vault_address} ${initial_micros / USD_MICROS:,.2f}")
            return TransferStatus.SUBMITTED, initial_micros, None
        except InsufficientEquityError as e:
            logger.info(f"지분 부족으로 출금 실패, 금액 축소 재시도 시작: {vault_address} ${initial_micros / USD_MICROS:,.2f} ({e})")
        except Exception as e:
            logger.warning(f"출금 실패: {vault_address} - {e}")
            return TransferStatus.ERROR, initial_micros, str(e)

        floor_micros = self.min_retry_usd * USD_MICROS
        for fraction in WITHDRAWAL_RETRY_FRACTIONS:
            retry_micros = math.floor(initial_micros * fraction)
            if retry_micros < floor_micros:
                logger.warning(
                    f"재시도 최소 금액 도달: {vault_address} {fraction:.0%} "
                    f"(${retry_micros / USD_MICROS:,.2f} < ${self.min_retry_usd:,.2f})"
                )
                break

            logger.info(f"   재시도 {fraction:.0%}: ${retry_micros / USD_MICROS:,.2f}")
            try:
                await self._transfer(vault_address, False, retry_micros)
            except InsufficientEquityError:
                continue
            except Exception as e:
                logger.warning(f"출금 재시도 중단 (지분 부족 외 오류): {vault_address} - {e}")
                return TransferStatus.ERROR, initial_micros, str(e)

            transfer_log.info(
                f"✅ 축소 출금 성공: {vault_address} ${retry_micros / USD_MICROS:,.2f} "
                f"(원 요청 ${initial_micros / USD_MICROS:,.2f}의 {fraction:.0%})"
            )
            return TransferStatus.SUBMITTED, retry_micros, None

        logger.warning(f"모든 재시도 단계에서 출금 실패: {vault_address} ${initial_micros / USD_MICROS:,.2f}")
        return (
            TransferStatus.ERROR,
            initial_micros,
            f"Insufficient equity even at {WITHDRAWAL_RETRY_FRACTIONS[-1]:.0%} of requested amount"
        )

    async def _transfer(self, vault_address: str, is_deposit: bool, usd_micros: int) -> None:
        transfer_log.info(f"→ {'입금' if is_deposit else '출금'} 요청: {vault_address} ${usd_micros / USD_MICROS:,.2f}")
        await self.ledger.transfer(vault_address, is_deposit, usd_micros)
