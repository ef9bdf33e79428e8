"""
models.py - 리밸런싱 라운드 데이터 모델

모든 객체는 라운드 시작 시 새로 만들어지고 라운드 종료와 함께 버려집니다.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from config import now_utc
from vault_engine.recommendations.types import Confidence


class TransferStatus(str, Enum):
    """전송 결과 상태 (모두 종료 상태)"""
    SKIPPED = "skipped"      # 시도하지 않음 (0원, 최소액 미만, 잠금, 미보유)
    PREPARED = "prepared"    # 드라이런: 계산만 함
    SUBMITTED = "submitted"  # 원장이 전송을 수락
    ERROR = "error"          # 재시도 소진 또는 재시도 불가 오류


class SkipReason:
    """skipped 사유 문자열"""
    ZERO_AMOUNT = "zero-amount"
    BELOW_MINIMUM = "below-minimum"
    LOCKED = "locked"
    ALREADY_AT_TARGET = "already-at-target"
    NOT_DEPOSITED = "not-deposited"


@dataclass
class TransferAction:
    """입금/출금 1건의 결과"""
    vault_address: str
    usd_micros: int
    status: TransferStatus
    reason: Optional[str] = None
    error: Optional[str] = None
    equity_usd: Optional[float] = None
    locked_until: Optional[datetime] = None

    @property
    def usd(self) -> float:
        return self.usd_micros / 1_000_000

    def to_dict(self) -> dict:
        return {
            "vault_address": self.vault_address,
            "usd_micros": self.usd_micros,
            "status": self.status.value,
            "reason": self.reason,
            "error": self.error,
            "equity_usd": self.equity_usd,
            "locked_until": self.locked_until.isoformat() if self.locked_until else None
        }


@dataclass(frozen=True)
class DepositTarget:
    """신규 입금 계획 1건 (deposit_usd <= target_usd)"""
    vault_address: str
    name: str
    confidence: Confidence
    target_usd: float
    deposit_usd: float

    def to_dict(self) -> dict:
        return {
            "vault_address": self.vault_address,
            "name": self.name,
            "confidence": self.confidence.value,
            "target_usd": self.target_usd,
            "deposit_usd": self.deposit_usd
        }


@dataclass(frozen=True)
class BarbellTargets:
    """그룹별 볼트당 목표 금액 (축소 전)"""
    total_capital_usd: float
    high_pct: float
    low_pct: float
    high_per_vault_usd: float
    low_per_vault_usd: float
    reassigned_share: Optional[Confidence] = None
    unallocated_usd: float = 0.0

    def per_vault(self, confidence: Confidence) -> float:
        if confidence == Confidence.HIGH:
            return self.high_per_vault_usd
        return self.low_per_vault_usd


@dataclass(frozen=True)
class DepositPlan:
    """
    라운드 입금 계획

    불변식: sum(target.deposit_usd) <= available_balance_usd (반올림 오차 이내)
    """
    available_balance_usd: float
    total_capital_usd: float
    current_invested_usd: float
    high_pct: float
    low_pct: float
    scale_factor: float
    targets: tuple[DepositTarget, ...] = ()
    reassigned_share: Optional[Confidence] = None
    unallocated_usd: float = 0.0
    generated_at: datetime = field(default_factory=now_utc)

    @property
    def total_deposit_usd(self) -> float:
        return sum(t.deposit_usd for t in self.targets)

    def to_dict(self) -> dict:
        return {
            "generated_at": self.generated_at.isoformat(),
            "available_balance_usd": self.available_balance_usd,
            "total_capital_usd": self.total_capital_usd,
            "current_invested_usd": self.current_invested_usd,
            "high_pct": self.high_pct,
            "low_pct": self.low_pct,
            "scale_factor": self.scale_factor,
            "reassigned_share": self.reassigned_share.value if self.reassigned_share else None,
            "unallocated_usd": self.unallocated_usd,
            "targets": [t.to_dict() for t in self.targets]
        }


@dataclass
class DepositExecutionResult:
    """입금 계획 실행 결과"""
    dry_run: bool
    total: int = 0
    submitted: int = 0
    skipped: int = 0
    errors: int = 0
    actions: list[TransferAction] = field(default_factory=list)

    def record(self, action: TransferAction) -> None:
        self.actions.append(action)
        if action.status == TransferStatus.SUBMITTED:
            self.submitted += 1
        elif action.status == TransferStatus.SKIPPED:
            self.skipped += 1
        elif action.status == TransferStatus.ERROR:
            self.errors += 1

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "total": self.total,
            "submitted": self.submitted,
            "skipped": self.skipped,
            "errors": self.errors,
            "actions": [a.to_dict() for a in self.actions]
        }


@dataclass
class RoundResult:
    """리밸런싱 라운드 결과 (로그/이력/알림용)"""
    started_at: datetime
    dry_run: bool
    recommended: list[str] = field(default_factory=list)
    tp_withdrawals: list[TransferAction] = field(default_factory=list)
    withdrawals: list[TransferAction] = field(default_factory=list)
    deposits: Optional[DepositExecutionResult] = None
    plan: Optional[DepositPlan] = None
    warnings: list[str] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    @property
    def all_withdrawals(self) -> list[TransferAction]:
        return self.withdrawals + self.tp_withdrawals

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "dry_run": self.dry_run,
            "recommended": list(self.recommended),
            "tp_withdrawals": [a.to_dict() for a in self.tp_withdrawals],
            "withdrawals": [a.to_dict() for a in self.withdrawals],
            "deposits": self.deposits.to_dict() if self.deposits else None,
            "plan": self.plan.to_dict() if self.plan else None,
            "warnings": list(self.warnings)
        }
