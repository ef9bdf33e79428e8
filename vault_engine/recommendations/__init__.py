"""
recommendations - 추천 세트 모듈

외부 랭킹 파이프라인의 결과(고신뢰/저신뢰 볼트 목록)를 엔진에 공급합니다.

사용법:
    from vault_engine.recommendations import FileRecommendationProvider

    provider = FileRecommendationProvider("data/recommendations.json")
    rec_set = await provider.get_recommendations()
"""

from vault_engine.recommendations.types import (
    Confidence,
    Recommendation,
    SuggestedAllocations,
    RecommendationSet
)

from vault_engine.recommendations.cache import TTLCache

from vault_engine.recommendations.provider import (
    RecommendationProvider,
    StaticRecommendationProvider,
    FileRecommendationProvider,
    HttpRecommendationProvider,
    CachedRecommendationProvider,
    parse_recommendation_set
)


__all__ = [
    "Confidence",
    "Recommendation",
    "SuggestedAllocations",
    "RecommendationSet",
    "TTLCache",
    "RecommendationProvider",
    "StaticRecommendationProvider",
    "FileRecommendationProvider",
    "HttpRecommendationProvider",
    "CachedRecommendationProvider",
    "parse_recommendation_set"
]
