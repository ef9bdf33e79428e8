"""
types.py - 원장 조회 결과 타입
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class Position:
    """
    보유 볼트 포지션 스냅샷 (라운드 동안 읽기 전용)

    Attributes:
        vault_address: 볼트 주소
        equity_usd: 현재 지분 가치 (USD)
        locked_until: 잠금 해제 시각 (없으면 None)
        pnl_usd: 미실현 손익 (USD, 알 수 없으면 None)
        roe_pct: ROE (%, 알 수 없으면 None)
        active_position_count: 볼트가 보유한 온체인 포지션 수
        trades_last_7d: 최근 7일 체결 수
    """
    vault_address: str
    equity_usd: float
    locked_until: Optional[datetime] = None
    pnl_usd: Optional[float] = None
    roe_pct: Optional[float] = None
    active_position_count: int = 0
    trades_last_7d: int = 0
    vault_name: str = ""

    @property
    def address_key(self) -> str:
        """비교용 소문자 주소"""
        return self.vault_address.lower()

    def is_locked(self, now: datetime) -> bool:
        """잠금 기간 중인지 여부"""
        return self.locked_until is not None and self.locked_until > now

    @property
    def is_inactive(self) -> bool:
        """포지션 0개, 최근 7일 거래 0건"""
        return self.active_position_count == 0 and self.trades_last_7d == 0
