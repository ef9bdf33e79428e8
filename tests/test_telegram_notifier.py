"""
test_telegram_notifier.py - 텔레그램 알림 테스트 (전송 없이 메시지 생성만)
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import now_utc
from vault_engine.reporter import TelegramNotifier
from vault_engine.rebalancer.models import DepositExecutionResult, RoundResult, TransferAction, TransferStatus


def test_disabled_without_credentials():
    notifier = TelegramNotifier(bot_token="", chat_id="")

    assert notifier.enabled is False
    assert notifier.send_message("hello") is False
    assert notifier.send_error_alert("테스트", "message") is False


def test_round_summary_format():
    deposits = DepositExecutionResult(dry_run=True, total=1)
    deposits.record(TransferAction("0x1234567890abcdef1234", 84_000_000, TransferStatus.PREPARED))
    result = RoundResult(
        started_at=now_utc(),
        dry_run=True,
        recommended=["0xa", "0xb"],
        withdrawals=[TransferAction("0xold", 99_900_000, TransferStatus.PREPARED, reason="inactive")],
        deposits=deposits,
        warnings=["reassigned-group-share: low share moved to the other group"]
    )

    text = TelegramNotifier(bot_token="", chat_id="").format_round_summary(result)

    assert "드라이런" in text
    assert "추천 볼트: 2개" in text
    assert "$99.90" in text
    assert "inactive" in text
    assert "$84.00" in text
    assert "0x1234...1234" in text
    assert "reassigned-group-share" in text
