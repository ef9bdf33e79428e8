"""
test_orchestrator.py - 리밸런싱 라운드 테스트

출금 규칙 우선순위, ROE 경계값, 정산 대기, 개별 실패 격리를 검증합니다.
"""

import sys
import asyncio
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from vault_engine.ledger import ConfigurationError, MockLedgerClient, Position, TransferRejectedError
from vault_engine.recommendations import (
    Confidence,
    Recommendation,
    RecommendationSet,
    StaticRecommendationProvider,
)
from vault_engine.rebalancer import (
    AllocationPlanner,
    RebalanceOrchestrator,
    TransferExecutor,
    TransferStatus,
)


WALLET = "0x00000000000000000000000000000000000000ff"


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def position(address, equity, roe=None, active=1, trades=5):
    pnl = None if roe is None else equity - equity / (1 + roe / 100)
    return Position(
        vault_address=address,
        equity_usd=equity,
        pnl_usd=pnl,
        roe_pct=roe,
        active_position_count=active,
        trades_last_7d=trades
    )


def recommendations(high=(), low=()):
    return RecommendationSet(
        high_confidence=tuple(Recommendation(a, a, Confidence.HIGH, score=10 - i) for i, a in enumerate(high)),
        low_confidence=tuple(Recommendation(a, a, Confidence.LOW, score=10 - i) for i, a in enumerate(low))
    )


def make_orchestrator(ledger, rec_set, sleep=None, **kwargs):
    params = dict(
        wallet=WALLET,
        executor=TransferExecutor(ledger, min_deposit_usd=5.0, buffer_bps=10, min_retry_usd=1.0),
        planner=AllocationPlanner(max_active=10, high_pct=70, low_pct=30,
                                  dust_threshold_usd=1.0, reassign_empty_group=True),
        take_profit_roe_pct=10.0,
        min_exit_roe_pct=2.0,
        withdrawal_delay_ms=60_000,
        include_locked=False,
        dry_run=True,
        sleep=sleep or FakeSleep()
    )
    params.update(kwargs)
    return RebalanceOrchestrator(ledger, StaticRecommendationProvider(rec_set), **params)


def test_missing_wallet_is_refused(monkeypatch):
    """지갑 없이는 오케스트레이터 생성 거부"""
    from config import settings
    monkeypatch.setattr(settings, "WALLET", "")

    with pytest.raises(ConfigurationError):
        RebalanceOrchestrator(MockLedgerClient(), StaticRecommendationProvider(RecommendationSet()), wallet="")


def test_rule_priority():
    """비활성 > 익절 > 추천 제외 순으로 각 포지션은 하나의 규칙만 적용"""
    ledger = MockLedgerClient(balance=0.0, positions=[
        position("h1", 100.0, roe=50.0, active=0, trades=0),   # 추천 + 고수익이지만 비활성
        position("h2", 500.0, roe=20.0),                       # 추천 + 목표 초과 → 익절
        position("n1", 50.0, roe=5.0),                         # 추천 제외 → 출금
    ])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1", "h2"), low=("l1",)))

    result = asyncio.run(orchestrator.run_round())

    assert [(a.vault_address, a.reason) for a in result.withdrawals] == [
        ("h1", "inactive"),
        ("n1", "not-recommended"),
    ]
    assert [(a.vault_address, a.reason) for a in result.tp_withdrawals] == [("h2", "take-profit")]
    assert all(a.status == TransferStatus.PREPARED for a in result.all_withdrawals)
    assert ledger.transfers == []


def test_inactive_exit_wins_over_other_rules():
    """비활성 볼트는 추천 여부/수익 부호와 무관하게 inactive 전액 출금 (한 번만)"""
    ledger = MockLedgerClient(balance=0.0, positions=[
        position("gone-gain", 100.0, roe=8.0, active=0, trades=0),    # 추천 제외 + 수익
        position("gone-loss", 100.0, roe=-15.0, active=0, trades=0),  # 추천 제외 + 손실
        position("h1", 100.0, roe=-4.0, active=0, trades=0),          # 추천 + 손실
    ])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)))

    result = asyncio.run(orchestrator.run_round())

    assert [(a.vault_address, a.reason) for a in result.withdrawals] == [
        ("gone-gain", "inactive"),
        ("gone-loss", "inactive"),
        ("h1", "inactive"),
    ]
    assert result.tp_withdrawals == []
    assert all(a.reason != "not-recommended" for a in result.all_withdrawals)
    assert all(a.status == TransferStatus.PREPARED for a in result.withdrawals)


def test_round_progress_written_with_round_context():
    """라운드 진행 로그는 rebalance_round 컨텍스트로 기록"""
    from logger import logger, ROUND_TASK

    records = []
    sink_id = logger.add(
        lambda message: records.append(message.record),
        level="INFO",
        filter=lambda record: record["extra"].get("task") == ROUND_TASK
    )
    try:
        ledger = MockLedgerClient(balance=1000.0)
        orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)))
        result = asyncio.run(orchestrator.run_round())
    finally:
        logger.remove(sink_id)

    messages = [r["message"] for r in records]
    assert any("라운드 시작" in m for m in messages)
    assert any("라운드 완료" in m for m in messages)
    assert any("reassigned-group-share" in m for m in messages)
    assert all(r["extra"]["dry_run"] is True for r in records)
    assert all(r["extra"]["started_at"] == result.started_at.isoformat() for r in records)


def test_exit_roe_boundary():
    """추천 제외 볼트는 ROE 2.0% 이상일 때만 출금"""
    ledger = MockLedgerClient(positions=[
        position("below", 100.0, roe=1.9),
        position("at", 100.0, roe=2.0),
        position("unknown", 100.0, roe=None),
    ])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)))

    result = asyncio.run(orchestrator.run_round())

    assert [a.vault_address for a in result.withdrawals] == ["at"]


def test_zero_exit_threshold_requires_positive_pnl():
    ledger = MockLedgerClient(positions=[
        position("loss", 100.0, roe=-3.0),
        position("gain", 100.0, roe=0.5),
    ])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)), min_exit_roe_pct=0.0)

    result = asyncio.run(orchestrator.run_round())

    assert [a.vault_address for a in result.withdrawals] == ["gain"]


def test_take_profit_boundary():
    """추천 볼트 익절은 ROE 10% 이상 + 목표 초과일 때만"""
    ledger = MockLedgerClient(positions=[
        position("h1", 300.0, roe=10.0),
        position("h2", 300.0, roe=9.9),
    ])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1", "h2", "h3")))

    result = asyncio.run(orchestrator.run_round())

    # 총 자본 600, 고신뢰 3개 (저신뢰 몫 재배정) → 볼트당 목표 200
    assert [a.vault_address for a in result.tp_withdrawals] == ["h1"]
    assert abs(result.tp_withdrawals[0].usd_micros - 99_900_000) <= 1
    assert result.withdrawals == []


def test_take_profit_skipped_when_at_or_below_target():
    ledger = MockLedgerClient(balance=1000.0, positions=[position("h1", 100.0, roe=25.0)])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)))

    result = asyncio.run(orchestrator.run_round())

    assert result.tp_withdrawals == []


def test_dry_run_round_has_no_settle_delay():
    sleep = FakeSleep()
    ledger = MockLedgerClient(balance=100.0, positions=[position("n1", 100.0, roe=5.0)])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)), sleep=sleep)

    result = asyncio.run(orchestrator.run_round(dry_run=True))

    assert sleep.calls == []
    assert result.deposits.submitted == 0
    assert ledger.transfers == []


def test_live_round_waits_then_deposits_withdrawn_funds():
    """출금 제출 후 정산 대기, 재조회한 잔고로 입금"""
    sleep = FakeSleep()
    ledger = MockLedgerClient(balance=0.0, positions=[position("n1", 100.0, roe=5.0)])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)), sleep=sleep)

    result = asyncio.run(orchestrator.run_round(dry_run=False))

    assert sleep.calls == [60.0]
    assert result.withdrawals[0].status == TransferStatus.SUBMITTED
    assert result.deposits.submitted == 1
    assert result.deposits.actions[0].vault_address == "h1"
    assert "h1" in ledger.positions
    assert ledger.balance < 0.01


def test_no_delay_when_nothing_submitted():
    sleep = FakeSleep()
    ledger = MockLedgerClient(balance=500.0, positions=[position("n1", 100.0, roe=1.0)])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)), sleep=sleep)

    asyncio.run(orchestrator.run_round(dry_run=False))

    assert sleep.calls == []


def test_item_failure_does_not_stop_round():
    """한 볼트 출금 실패가 다른 출금/입금을 막지 않음"""
    ledger = MockLedgerClient(balance=200.0, positions=[
        position("n1", 100.0, roe=5.0),
        position("n2", 100.0, roe=5.0),
    ])
    ledger.failures["n1"] = TransferRejectedError("Vault is closed", "n1")
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)), withdrawal_delay_ms=0)

    result = asyncio.run(orchestrator.run_round(dry_run=False))

    statuses = {a.vault_address: a.status for a in result.withdrawals}
    assert statuses == {"n1": TransferStatus.ERROR, "n2": TransferStatus.SUBMITTED}
    assert result.deposits.submitted == 1


def test_locked_position_skipped_unless_included():
    from datetime import timedelta
    from config import now_utc

    locked = Position("n1", 100.0, locked_until=now_utc() + timedelta(days=2),
                      pnl_usd=10.0, roe_pct=11.1, active_position_count=1, trades_last_7d=1)
    ledger = MockLedgerClient(positions=[locked])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",)))

    skipped = asyncio.run(orchestrator.run_round())
    included = asyncio.run(orchestrator.run_round(include_locked=True))

    assert skipped.withdrawals[0].status == TransferStatus.SKIPPED
    assert skipped.withdrawals[0].reason == "locked"
    assert included.withdrawals[0].status == TransferStatus.PREPARED


def test_unallocated_share_is_flagged():
    ledger = MockLedgerClient(balance=1000.0)
    orchestrator = make_orchestrator(
        ledger,
        recommendations(low=("l1",)),
        planner=AllocationPlanner(max_active=10, high_pct=70, low_pct=30,
                                  dust_threshold_usd=1.0, reassign_empty_group=False)
    )

    result = asyncio.run(orchestrator.run_round())

    assert result.plan.unallocated_usd == 700.0
    assert any(w.startswith("unallocated-group-share") for w in result.warnings)


def test_round_result_serializes():
    ledger = MockLedgerClient(balance=100.0, positions=[position("n1", 50.0, roe=3.0)])
    orchestrator = make_orchestrator(ledger, recommendations(high=("h1",), low=("l1",)))

    data = asyncio.run(orchestrator.run_round()).to_dict()

    assert data["dry_run"] is True
    assert data["recommended"] == ["h1", "l1"]
    assert data["withdrawals"][0]["status"] == "prepared"
    assert data["deposits"]["total"] == 2
