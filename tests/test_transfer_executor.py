"""
test_transfer_executor.py - 입금/출금 실행기 테스트

최소 입금액, 잠금, 드라이런, 금액 축소 재시도 규칙을 검증합니다.
"""

import sys
import asyncio
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import now_utc
from logger import logger
from vault_engine.ledger import (
    InsufficientEquityError,
    MockLedgerClient,
    Position,
    TransferRejectedError,
)
from vault_engine.rebalancer.transfer_executor import TransferExecutor, to_usd_micros
from vault_engine.rebalancer.models import SkipReason, TransferStatus


VAULT = "0xAbC0000000000000000000000000000000000001"


class ScriptedLedger(MockLedgerClient):
    """정해진 순서대로 예외를 던지는 모의 원장"""

    def __init__(self, errors, **kwargs):
        super().__init__(**kwargs)
        self.errors = list(errors)

    async def transfer(self, vault_address, is_deposit, usd_micros):
        if self.errors:
            self.transfers.append((vault_address, is_deposit, usd_micros))
            raise self.errors.pop(0)
        await super().transfer(vault_address, is_deposit, usd_micros)


def make_executor(ledger, **kwargs):
    params = dict(min_deposit_usd=5.0, buffer_bps=10, min_retry_usd=1.0)
    params.update(kwargs)
    return TransferExecutor(ledger, **params)


def make_position(equity, **kwargs):
    return Position(vault_address=VAULT, equity_usd=equity,
                    active_position_count=1, trades_last_7d=3, **kwargs)


def withdrawal_amounts(ledger):
    return [micros for _, is_deposit, micros in ledger.transfers if not is_deposit]


def test_to_usd_micros():
    """micro-USD 변환 (버퍼 차감, 내림)"""
    assert to_usd_micros(84.0) == 84_000_000
    assert to_usd_micros(100.0, buffer_bps=10) == 99_900_000
    assert to_usd_micros(0.0000005) == 0
    assert to_usd_micros(0) == 0
    assert to_usd_micros(-5) == 0
    assert to_usd_micros(float("nan")) == 0

    print("  [PASS] micro-USD 변환")


def test_deposit_below_minimum_is_skipped_without_ledger_call():
    """최소액 미만 입금은 원장 호출 없이 건너뜀 (반복해도 동일)"""
    ledger = MockLedgerClient(balance=100)
    executor = make_executor(ledger)

    first = asyncio.run(executor.deposit(VAULT, 4.99, dry_run=False))
    second = asyncio.run(executor.deposit(VAULT, 4.99, dry_run=False))

    for action in (first, second):
        assert action.status == TransferStatus.SKIPPED
        assert action.reason == SkipReason.BELOW_MINIMUM
    assert ledger.transfers == []
    assert ledger.balance == 100

    print("  [PASS] 최소액 미만 입금 건너뜀")


def test_deposit_zero_amount():
    ledger = MockLedgerClient(balance=100)
    action = asyncio.run(make_executor(ledger).deposit(VAULT, 0.0, dry_run=False))

    assert action.status == TransferStatus.SKIPPED
    assert action.reason == SkipReason.ZERO_AMOUNT
    assert ledger.transfers == []


def test_deposit_dry_run_prepares_only():
    """드라이런은 금액만 계산하고 원장을 호출하지 않음"""
    ledger = MockLedgerClient(balance=100)
    action = asyncio.run(make_executor(ledger).deposit(VAULT, 84.0, dry_run=True))

    assert action.status == TransferStatus.PREPARED
    assert action.usd_micros == 84_000_000
    assert ledger.transfers == []

    print("  [PASS] 드라이런 입금")


def test_deposit_live_submits_once():
    ledger = MockLedgerClient(balance=100)
    executor = make_executor(ledger)
    action = asyncio.run(executor.deposit(VAULT, 84.0, dry_run=False))

    assert action.status == TransferStatus.SUBMITTED
    assert ledger.transfers == [(VAULT, True, 84_000_000)]
    assert abs(ledger.balance - 16.0) < 1e-9
    assert ledger.positions[VAULT.lower()].equity_usd == 84.0


def test_deposit_failure_is_not_retried():
    """입금 실패는 재시도 없이 error"""
    ledger = MockLedgerClient(balance=100)
    ledger.failures[VAULT.lower()] = TransferRejectedError("Vault is closed", VAULT)
    executor = make_executor(ledger)

    action = asyncio.run(executor.deposit(VAULT, 50.0, dry_run=False))

    assert action.status == TransferStatus.ERROR
    assert "closed" in action.error
    assert len(ledger.transfers) == 1


def test_withdraw_ladder_succeeds_at_reduced_amount():
    """지분 부족 시 95% → 90% → ... 순으로 줄여 첫 성공에서 종료"""
    position = make_position(100.0)
    ledger = MockLedgerClient(positions=[position])
    ledger.withdraw_limits[VAULT.lower()] = 80_000_000
    executor = make_executor(ledger)

    action = asyncio.run(executor.withdraw_full(position, dry_run=False))

    attempts = withdrawal_amounts(ledger)
    assert action.status == TransferStatus.SUBMITTED
    assert len(attempts) == 5  # 원 요청 + 95/90/85/80%
    assert all(a > b for a, b in zip(attempts, attempts[1:]))
    assert action.usd_micros == attempts[-1]
    assert action.usd_micros <= 80_000_000
    assert abs(attempts[0] - 99_900_000) <= 1

    print("  [PASS] 금액 축소 재시도 성공")


def test_withdraw_ladder_stops_on_other_error():
    """지분 부족 외 오류가 나오면 재시도 중단"""
    position = make_position(100.0)
    ledger = ScriptedLedger(
        [
            InsufficientEquityError("Insufficient vault equity for withdrawal", VAULT),
            TransferRejectedError("Vault is locked", VAULT),
        ],
        positions=[position]
    )
    executor = make_executor(ledger)

    action = asyncio.run(executor.withdraw_full(position, dry_run=False))

    assert action.status == TransferStatus.ERROR
    assert "locked" in action.error
    assert len(withdrawal_amounts(ledger)) == 2


def test_withdraw_first_attempt_other_error_no_retry():
    position = make_position(100.0)
    ledger = MockLedgerClient(positions=[position])
    ledger.failures[VAULT.lower()] = TransferRejectedError("Must wait for lockup", VAULT)

    action = asyncio.run(make_executor(ledger).withdraw_full(position, dry_run=False))

    assert action.status == TransferStatus.ERROR
    assert len(withdrawal_amounts(ledger)) == 1


def test_withdraw_ladder_respects_floor():
    """재시도 금액이 최소 금액 아래로 내려가면 중단"""
    position = make_position(1.5)
    ledger = MockLedgerClient(positions=[position])
    ledger.withdraw_limits[VAULT.lower()] = 0
    executor = make_executor(ledger, min_retry_usd=1.0)

    action = asyncio.run(executor.withdraw_full(position, dry_run=False))

    attempts = withdrawal_amounts(ledger)
    assert action.status == TransferStatus.ERROR
    assert all(a >= 1_000_000 for a in attempts)
    assert len(attempts) == 7  # 원 요청 + 95~70% (60%는 $1 미만)


def test_withdraw_ladder_exhausted():
    position = make_position(1000.0)
    ledger = MockLedgerClient(positions=[position])
    ledger.withdraw_limits[VAULT.lower()] = 1
    executor = make_executor(ledger)

    action = asyncio.run(executor.withdraw_full(position, dry_run=False))

    attempts = withdrawal_amounts(ledger)
    assert action.status == TransferStatus.ERROR
    assert len(attempts) == 9
    assert "50%" in action.error
    assert all(a > b for a, b in zip(attempts, attempts[1:]))

    print("  [PASS] 재시도 소진")


def test_every_attempt_written_to_transfer_log():
    """제출 시도마다 전송 로그에 한 줄씩 기록 (실행기에는 시도 이력을 쌓지 않음)"""
    position = make_position(1000.0)
    ledger = MockLedgerClient(positions=[position])
    ledger.withdraw_limits[VAULT.lower()] = 1
    executor = make_executor(ledger)

    messages = []
    sink_id = logger.add(
        lambda message: messages.append(message.record["message"]),
        level="INFO",
        filter=lambda record: "transfer" in record["extra"]
    )
    try:
        asyncio.run(executor.withdraw_full(position, dry_run=False))
    finally:
        logger.remove(sink_id)

    requests = [m for m in messages if "출금 요청" in m]
    assert len(requests) == len(withdrawal_amounts(ledger)) == 9
    assert not hasattr(executor, "attempt_log")


def test_withdraw_without_equity_is_not_deposited():
    """지분이 없는 볼트는 원장 호출 없이 not-deposited로 건너뜀"""
    position = make_position(0.0)
    ledger = MockLedgerClient(positions=[position])
    executor = make_executor(ledger)

    full = asyncio.run(executor.withdraw_full(position, dry_run=False))
    partial = asyncio.run(executor.withdraw_partial(position, target_usd=-1.0, dry_run=False))

    for action in (full, partial):
        assert action.status == TransferStatus.SKIPPED
        assert action.reason == SkipReason.NOT_DEPOSITED
        assert action.usd_micros == 0
    assert ledger.transfers == []


def test_withdraw_locked_position_skipped():
    """잠금 중인 볼트는 include_locked 없이는 건너뜀"""
    position = make_position(100.0, locked_until=now_utc() + timedelta(days=1))
    ledger = MockLedgerClient(positions=[position])
    executor = make_executor(ledger)

    skipped = asyncio.run(executor.withdraw_full(position, dry_run=False))
    assert skipped.status == TransferStatus.SKIPPED
    assert skipped.reason == SkipReason.LOCKED
    assert skipped.locked_until == position.locked_until
    assert ledger.transfers == []

    prepared = asyncio.run(executor.withdraw_full(position, dry_run=True, include_locked=True))
    assert prepared.status == TransferStatus.PREPARED


def test_withdraw_expired_lock_is_not_locked():
    position = make_position(100.0, locked_until=now_utc() - timedelta(minutes=1))
    action = asyncio.run(make_executor(MockLedgerClient()).withdraw_full(position, dry_run=True))

    assert action.status == TransferStatus.PREPARED


def test_withdraw_partial():
    """부분 출금은 목표 초과분만, 목표 이하면 건너뜀"""
    ledger = MockLedgerClient()
    executor = make_executor(ledger)

    at_target = asyncio.run(executor.withdraw_partial(make_position(100.0), 100.0, dry_run=True))
    assert at_target.status == TransferStatus.SKIPPED
    assert at_target.reason == SkipReason.ALREADY_AT_TARGET

    excess = asyncio.run(executor.withdraw_partial(make_position(150.0), 100.0, dry_run=True))
    assert excess.status == TransferStatus.PREPARED
    assert excess.reason == "take-profit"
    assert abs(excess.usd_micros - 49_950_000) <= 1

    print("  [PASS] 부분 출금")


def test_withdraw_dry_run_never_calls_ledger():
    position = make_position(100.0)
    ledger = MockLedgerClient(positions=[position])
    action = asyncio.run(make_executor(ledger).withdraw_full(position, dry_run=True, reason="inactive"))

    assert action.status == TransferStatus.PREPARED
    assert action.reason == "inactive"
    assert ledger.transfers == []


def run_all_tests():
    """모든 테스트 실행"""
    print("=" * 60)
    print("  전송 실행기 테스트")
    print("=" * 60)

    tests = [
        test_to_usd_micros,
        test_deposit_below_minimum_is_skipped_without_ledger_call,
        test_deposit_zero_amount,
        test_deposit_dry_run_prepares_only,
        test_deposit_live_submits_once,
        test_deposit_failure_is_not_retried,
        test_withdraw_ladder_succeeds_at_reduced_amount,
        test_withdraw_ladder_stops_on_other_error,
        test_withdraw_first_attempt_other_error_no_retry,
        test_withdraw_ladder_respects_floor,
        test_withdraw_ladder_exhausted,
        test_every_attempt_written_to_transfer_log,
        test_withdraw_without_equity_is_not_deposited,
        test_withdraw_locked_position_skipped,
        test_withdraw_expired_lock_is_not_locked,
        test_withdraw_partial,
        test_withdraw_dry_run_never_calls_ledger,
    ]

    passed = 0
    failed = 0

    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"  [FAIL] {test.__name__}: {e}")
            failed += 1

    print("=" * 60)
    print(f"  결과: {passed} passed, {failed} failed / {len(tests)} total")
    print("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
