"""
types.py - 추천 세트 타입

추천 세트는 외부 랭킹 파이프라인이 생성하며, 엔진은 라운드마다
불변 입력으로 취급합니다.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from config import now_utc


class Confidence(str, Enum):
    """신뢰도 그룹"""
    HIGH = "high"
    LOW = "low"


@dataclass(frozen=True)
class Recommendation:
    """추천 볼트 1건"""
    vault_address: str
    name: str
    confidence: Confidence
    score: float = 0.0
    allocation_pct: Optional[float] = None
    reason: str = ""

    @property
    def address_key(self) -> str:
        return self.vault_address.lower()


@dataclass(frozen=True)
class SuggestedAllocations:
    """AI 제안 배분 (모든 필드 선택)"""
    high_pct: Optional[float] = None
    low_pct: Optional[float] = None
    high_count: Optional[int] = None
    low_count: Optional[int] = None


@dataclass(frozen=True)
class RecommendationSet:
    """라운드 입력 추천 세트"""
    high_confidence: tuple[Recommendation, ...] = ()
    low_confidence: tuple[Recommendation, ...] = ()
    suggested_allocations: Optional[SuggestedAllocations] = None
    source: str = "unknown"
    generated_at: datetime = field(default_factory=now_utc)

    @property
    def all(self) -> tuple[Recommendation, ...]:
        return self.high_confidence + self.low_confidence

    def addresses(self) -> set[str]:
        """추천된 볼트 주소 (소문자)"""
        return {rec.address_key for rec in self.all}

    def confidence_of(self, vault_address: str) -> Optional[Confidence]:
        """볼트의 신뢰도 그룹 (추천에 없으면 None)"""
        key = vault_address.lower()
        for rec in self.high_confidence:
            if rec.address_key == key:
                return Confidence.HIGH
        for rec in self.low_confidence:
            if rec.address_key == key:
                return Confidence.LOW
        return None
