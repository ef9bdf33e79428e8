"""
config.py - 환경 변수 관리 모듈

이 파일은 리밸런싱 엔진의 모든 설정을 관리합니다.
.env 파일에서 지갑 주소, 서명기 경로 등 민감한 정보를 로드합니다.

사용법:
    from config import settings
    print(settings.REBALANCE_INTERVAL_MS)
"""

from datetime import datetime, timezone
from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import Field


# 프로젝트 루트 디렉토리 경로
PROJECT_ROOT = Path(__file__).parent.absolute()

MS_PER_DAY = 24 * 60 * 60 * 1000


class Settings(BaseSettings):
    """
    시스템 설정 클래스

    모든 환경 변수를 관리하며, .env 파일에서 자동으로 로드됩니다.
    Pydantic을 사용하여 타입 검증 및 기본값 설정을 수행합니다.
    """

    # ===== 지갑 / 원장 (Hyperliquid) =====
    WALLET: str = Field(
        default="",
        description="리밸런싱 대상 지갑 주소 (0x...)"
    )
    HYPERLIQUID_API_URL: str = Field(
        default="https://api.hyperliquid.xyz",
        description="Hyperliquid API 기본 URL"
    )
    IS_TESTNET: bool = Field(
        default=False,
        description="테스트넷 사용 여부"
    )
    LEDGER_HTTP_TIMEOUT: float = Field(
        default=40.0,
        description="원장 HTTP 호출 타임아웃 (초)"
    )
    LEDGER_SIGNER: str = Field(
        default="",
        description="액션 서명 함수 경로 (예: my_signer.sign:sign_action)"
    )

    # ===== 추천 소스 =====
    RECOMMENDATIONS_URL: str = Field(
        default="",
        description="추천 세트 조회 URL (JSON)"
    )
    RECOMMENDATIONS_PATH: str = Field(
        default=str(PROJECT_ROOT / "data" / "recommendations.json"),
        description="추천 세트 JSON 파일 경로 (URL 미설정 시 사용)"
    )
    RECOMMENDATIONS_TTL_SECONDS: int = Field(
        default=300,
        description="추천 세트 캐시 유지 시간 (초)"
    )

    # ===== 스케줄러 =====
    REBALANCE_ENABLED: bool = Field(
        default=True,
        description="리밸런싱 스케줄러 활성화 여부"
    )
    REBALANCE_DRY_RUN: bool = Field(
        default=True,
        description="드라이런 여부 (True: 실제 전송 없음)"
    )
    REBALANCE_INTERVAL_MS: float = Field(
        default=2 * MS_PER_DAY,
        description="리밸런싱 주기 (ms, 기본 2일)"
    )
    REBALANCE_WITHDRAWAL_DELAY_MS: int = Field(
        default=60_000,
        description="출금 후 입금 전 대기 시간 (ms)"
    )
    REBALANCE_INCLUDE_LOCKED: bool = Field(
        default=False,
        description="잠금 기간 중인 볼트도 출금 시도"
    )

    # ===== 배분 (바벨 전략) =====
    DEPOSIT_ACTIVE_COUNT: int = Field(
        default=10,
        description="최대 보유 볼트 수"
    )
    DEPOSIT_HIGH_PCT: float = Field(
        default=70.0,
        description="고신뢰 그룹 배분 비율 (%)"
    )
    DEPOSIT_LOW_PCT: float = Field(
        default=30.0,
        description="저신뢰 그룹 배분 비율 (%)"
    )
    DEPOSIT_REASSIGN_EMPTY_GROUP: bool = Field(
        default=True,
        description="추천이 없는 그룹의 몫을 다른 그룹으로 재배정"
    )
    MIN_DEPOSIT_USD: float = Field(
        default=5.0,
        description="최소 입금액 (USD)"
    )
    DUST_THRESHOLD_USD: float = Field(
        default=1.0,
        description="더스트 기준 (USD 미만 포지션은 보유로 보지 않음)"
    )

    # ===== 출금 조건 =====
    TAKE_PROFIT_ROE_PCT: float = Field(
        default=10.0,
        description="부분 익절 ROE 기준 (%)"
    )
    EXIT_MIN_ROE_PCT: float = Field(
        default=2.0,
        description="추천 제외 볼트 전량 출금 최소 ROE (%, 0이면 수익 시 출금)"
    )
    WITHDRAW_BUFFER_BPS: int = Field(
        default=10,
        description="출금 금액 안전 버퍼 (bps)"
    )
    WITHDRAW_MIN_RETRY_USD: float = Field(
        default=1.0,
        description="출금 재시도 최소 금액 (USD)"
    )

    # ===== Telegram Bot =====
    TELEGRAM_BOT_TOKEN: str = Field(
        default="",
        description="텔레그램 봇 토큰"
    )
    TELEGRAM_CHAT_ID: str = Field(
        default="",
        description="텔레그램 채팅 ID"
    )

    # ===== 데이터베이스 =====
    DATABASE_PATH: str = Field(
        default=str(PROJECT_ROOT / "data" / "rebalance.db"),
        description="SQLite 데이터베이스 파일 경로"
    )

    # ===== 로깅 =====
    LOG_LEVEL: str = Field(
        default="INFO",
        description="로그 레벨 (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    LOG_PATH: str = Field(
        default=str(PROJECT_ROOT / "logs"),
        description="로그 파일 저장 디렉토리"
    )

    class Config:
        """Pydantic 설정"""
        # .env 파일 경로 설정
        env_file = str(PROJECT_ROOT / ".env")
        env_file_encoding = "utf-8"
        # 대소문자 구분 안 함
        case_sensitive = False
        # 추가 필드 허용
        extra = "allow"


def now_utc() -> datetime:
    """현재 시각 (UTC, timezone-aware)"""
    return datetime.now(timezone.utc)


def get_hyperliquid_api_url(is_testnet: bool = False) -> str:
    """
    Hyperliquid API 기본 URL 반환

    Args:
        is_testnet: 테스트넷 여부

    Returns:
        API 기본 URL (설정값이 기본 메인넷 URL이 아닌 경우 설정값 우선)

    Example:
        >>> get_hyperliquid_api_url(is_testnet=True)
        'https://api.hyperliquid-testnet.xyz'
    """
    if settings.HYPERLIQUID_API_URL != "https://api.hyperliquid.xyz":
        return settings.HYPERLIQUID_API_URL.rstrip("/")
    if is_testnet:
        return "https://api.hyperliquid-testnet.xyz"
    return "https://api.hyperliquid.xyz"


# ===== 설정 싱글톤 인스턴스 =====
# 다른 모듈에서 'from config import settings'로 사용
settings = Settings()


# ===== 디버깅용 출력 함수 =====
def print_settings():
    """
    현재 설정 값 출력 (디버깅용)

    주의: 지갑 주소 등 민감한 정보는 마스킹 처리됨
    """
    wallet = settings.WALLET
    print("=" * 50)
    print("📋 현재 시스템 설정")
    print("=" * 50)
    print(f"지갑: {wallet[:6] + '...' + wallet[-4:] if len(wallet) > 10 else '(미설정)'}")
    print(f"API URL: {get_hyperliquid_api_url(settings.IS_TESTNET)}")
    print(f"서명기: {settings.LEDGER_SIGNER or '(미설정)'}")
    print(f"활성화: {settings.REBALANCE_ENABLED} / 드라이런: {settings.REBALANCE_DRY_RUN}")
    print(f"주기: {settings.REBALANCE_INTERVAL_MS / MS_PER_DAY:.2f}일")
    print(f"출금 후 대기: {settings.REBALANCE_WITHDRAWAL_DELAY_MS / 1000:.0f}초")
    print(f"최대 볼트 수: {settings.DEPOSIT_ACTIVE_COUNT}개")
    print(f"바벨 비율: {settings.DEPOSIT_HIGH_PCT:.0f}/{settings.DEPOSIT_LOW_PCT:.0f}")
    print(f"익절 ROE: {settings.TAKE_PROFIT_ROE_PCT}% / 출금 최소 ROE: {settings.EXIT_MIN_ROE_PCT}%")
    print(f"최소 입금액: ${settings.MIN_DEPOSIT_USD:,.2f}")
    print(f"DB 경로: {settings.DATABASE_PATH}")
    print(f"로그 경로: {settings.LOG_PATH}")
    print(f"로그 레벨: {settings.LOG_LEVEL}")
    print("=" * 50)


# 직접 실행 시 설정 확인
if __name__ == "__main__":
    print_settings()
