"""
cache.py - TTL 캐시

호출자가 소유하는 캐시입니다. 전역 상태를 두지 않으며,
테스트에서는 clock을 주입해 만료 시점을 결정적으로 제어합니다.

사용법:
    cache = TTLCache(ttl_seconds=300)
    cache.put("recommendations", rec_set)
    cached = cache.get("recommendations")
"""

import time
from typing import Any, Callable, Hashable, Optional


class TTLCache:
    """
    키별 만료 시간을 갖는 단순 캐시

    Attributes:
        ttl_seconds: 기본 유지 시간 (초)
        clock: 현재 시각(초)을 반환하는 함수
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """유효한 값 반환 (없거나 만료되면 None)"""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def put(self, key: Hashable, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self._entries[key] = (self.clock() + ttl, value)

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """키 삭제 (None이면 전체)"""
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
