"""
ledger - 볼트 원장 모듈

이 모듈은 외부 원장(Hyperliquid)과의 조회/전송 기능을 제공합니다.

주요 기능:
- 보유 볼트 포지션 / 가용 잔고 조회
- 볼트 입금/출금 전송
- 오류 분류 (지분 부족 / 거부 / 네트워크)

사용법:
    from vault_engine.ledger import HyperliquidLedgerClient, MockLedgerClient
"""

from vault_engine.ledger.errors import (
    ConfigurationError,
    LedgerError,
    InsufficientEquityError,
    TransferRejectedError,
    TransportError,
    classify_rejection
)

from vault_engine.ledger.types import Position

from vault_engine.ledger.hyperliquid_client import (
    LedgerClient,
    HyperliquidLedgerClient,
    MockLedgerClient,
    compute_roe_pct,
    USD_MICROS
)


__all__ = [
    # 오류
    "ConfigurationError",
    "LedgerError",
    "InsufficientEquityError",
    "TransferRejectedError",
    "TransportError",
    "classify_rejection",
    # 타입
    "Position",
    # 클라이언트
    "LedgerClient",
    "HyperliquidLedgerClient",
    "MockLedgerClient",
    "compute_roe_pct",
    "USD_MICROS"
]
