"""
rebalancer - 볼트 리밸런싱 모듈

이 모듈은 추천 세트에 맞춰 볼트 포지션을 재조정합니다.

주요 기능:
- 바벨 배분 입금 계획 (AllocationPlanner)
- 입금/출금 실행 + 금액 축소 재시도 (TransferExecutor)
- 라운드 오케스트레이션 (RebalanceOrchestrator)

사용법:
    from vault_engine.rebalancer import RebalanceOrchestrator

    orchestrator = RebalanceOrchestrator(ledger, provider)
    result = await orchestrator.run_round()
"""

# 데이터 모델
from vault_engine.rebalancer.models import (
    TransferStatus,
    SkipReason,
    TransferAction,
    DepositTarget,
    BarbellTargets,
    DepositPlan,
    DepositExecutionResult,
    RoundResult
)

# 입금 계획
from vault_engine.rebalancer.allocation_planner import AllocationPlanner

# 전송 실행
from vault_engine.rebalancer.transfer_executor import (
    TransferExecutor,
    to_usd_micros,
    WITHDRAWAL_RETRY_FRACTIONS
)

# 라운드 실행
from vault_engine.rebalancer.orchestrator import (
    RebalanceOrchestrator,
    ExitRule,
    WithdrawalDecision
)


__all__ = [
    # 모델
    "TransferStatus",
    "SkipReason",
    "TransferAction",
    "DepositTarget",
    "BarbellTargets",
    "DepositPlan",
    "DepositExecutionResult",
    "RoundResult",
    # 계획/실행
    "AllocationPlanner",
    "TransferExecutor",
    "to_usd_micros",
    "WITHDRAWAL_RETRY_FRACTIONS",
    # 오케스트레이션
    "RebalanceOrchestrator",
    "ExitRule",
    "WithdrawalDecision"
]
