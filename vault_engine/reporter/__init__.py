"""
reporter - 알림 모듈

사용법:
    from vault_engine.reporter import TelegramNotifier

    notifier = TelegramNotifier()
    notifier.send_round_summary(result)
"""

from vault_engine.reporter.telegram_notifier import (
    TelegramNotifier,
    send_telegram_error
)


__all__ = [
    "TelegramNotifier",
    "send_telegram_error"
]
