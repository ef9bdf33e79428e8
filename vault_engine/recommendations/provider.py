"""
provider.py - 추천 세트 제공자 모듈

이 파일은 외부 랭킹 파이프라인이 만든 추천 세트를 엔진에 공급합니다.

주요 기능:
- JSON(camelCase/snake_case) -> RecommendationSet 변환
- HTTP / 파일 / 고정값 제공자
- TTL 캐시 래퍼

사용법:
    from vault_engine.recommendations.provider import (
        HttpRecommendationProvider, CachedRecommendationProvider
    )

    provider = CachedRecommendationProvider(HttpRecommendationProvider(url), cache)
    rec_set = await provider.get_recommendations()
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logger import logger
from config import now_utc
from vault_engine.recommendations.cache import TTLCache
from vault_engine.recommendations.types import (
    Confidence,
    Recommendation,
    RecommendationSet,
    SuggestedAllocations,
)


CACHE_KEY = "recommendations"


def _pick(data: dict, *keys: str) -> Any:
    """여러 키 이름 중 처음 존재하는 값"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _parse_generated_at(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return now_utc()


def _parse_recommendation(item: dict, bucket: Confidence) -> Optional[Recommendation]:
    address = _pick(item, "vaultAddress", "vault_address", "address")
    if not address:
        logger.warning(f"주소 없는 추천 항목 무시: {item}")
        return None
    return Recommendation(
        vault_address=str(address),
        name=str(_pick(item, "name") or ""),
        confidence=bucket,
        score=_to_float(_pick(item, "score")) or 0.0,
        allocation_pct=_to_float(_pick(item, "allocationPct", "allocation_pct")),
        reason=str(_pick(item, "reason") or "")
    )


def parse_recommendation_set(data: dict) -> RecommendationSet:
    """
    추천 세트 JSON을 RecommendationSet으로 변환

    그룹 소속은 어느 목록에 들어있는지로 결정합니다.

    Args:
        data: {"highConfidence": [...], "lowConfidence": [...],
               "suggestedAllocations": {...}} 형식

    Returns:
        RecommendationSet
    """
    high_items = _pick(data, "highConfidence", "high_confidence") or []
    low_items = _pick(data, "lowConfidence", "low_confidence") or []

    high = tuple(
        rec for rec in (_parse_recommendation(i, Confidence.HIGH) for i in high_items) if rec
    )
    low = tuple(
        rec for rec in (_parse_recommendation(i, Confidence.LOW) for i in low_items) if rec
    )

    suggested = None
    raw_suggested = _pick(data, "suggestedAllocations", "suggested_allocations")
    if isinstance(raw_suggested, dict):
        suggested = SuggestedAllocations(
            high_pct=_to_float(_pick(raw_suggested, "highPct", "high_pct")),
            low_pct=_to_float(_pick(raw_suggested, "lowPct", "low_pct")),
            high_count=_to_int(_pick(raw_suggested, "highCount", "high_count")),
            low_count=_to_int(_pick(raw_suggested, "lowCount", "low_count"))
        )

    return RecommendationSet(
        high_confidence=high,
        low_confidence=low,
        suggested_allocations=suggested,
        source=str(_pick(data, "source") or "unknown"),
        generated_at=_parse_generated_at(_pick(data, "generatedAt", "generated_at"))
    )


class RecommendationProvider(ABC):
    """추천 세트 제공자 인터페이스"""

    @abstractmethod
    async def get_recommendations(self) -> RecommendationSet:
        """최신 추천 세트"""


class StaticRecommendationProvider(RecommendationProvider):
    """고정 추천 세트 (테스트/수동 실행용)"""

    def __init__(self, recommendations: RecommendationSet):
        self.recommendations = recommendations
        self.calls = 0

    async def get_recommendations(self) -> RecommendationSet:
        self.calls += 1
        return self.recommendations


class FileRecommendationProvider(RecommendationProvider):
    """JSON 파일에서 추천 세트 로드"""

    def __init__(self, path: str):
        self.path = Path(path)

    async def get_recommendations(self) -> RecommendationSet:
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        rec_set = parse_recommendation_set(data)
        logger.info(
            f"추천 세트 로드 ({self.path.name}): "
            f"고신뢰 {len(rec_set.high_confidence)}개, 저신뢰 {len(rec_set.low_confidence)}개"
        )
        return rec_set


class HttpRecommendationProvider(RecommendationProvider):
    """HTTP 엔드포인트에서 추천 세트 조회"""

    def __init__(self, url: str, timeout: float = 30.0):
        self.url = url
        self.timeout = timeout

    async def get_recommendations(self) -> RecommendationSet:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(self.url)
            response.raise_for_status()
            data = response.json()

        rec_set = parse_recommendation_set(data)
        logger.info(
            f"추천 세트 조회: 고신뢰 {len(rec_set.high_confidence)}개, "
            f"저신뢰 {len(rec_set.low_confidence)}개 (source={rec_set.source})"
        )
        return rec_set


class CachedRecommendationProvider(RecommendationProvider):
    """
    TTL 캐시 래퍼

    캐시는 호출자가 만들어 주입합니다. refresh=True면 캐시를 무시합니다.
    """

    def __init__(self, inner: RecommendationProvider, cache: TTLCache):
        self.inner = inner
        self.cache = cache

    async def get_recommendations(self, refresh: bool = False) -> RecommendationSet:
        if not refresh:
            cached = self.cache.get(CACHE_KEY)
            if cached is not None:
                logger.debug("추천 세트 캐시 사용")
                return cached

        rec_set = await self.inner.get_recommendations()
        self.cache.put(CACHE_KEY, rec_set)
        return rec_set
