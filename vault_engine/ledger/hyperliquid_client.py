"""
hyperliquid_client.py - 볼트 원장 클라이언트 모듈

이 파일은 Hyperliquid 원장을 통한 볼트 조회/전송 기능을 제공합니다.

주요 기능:
- 보유 볼트 포지션 조회 (지분, 잠금, 손익, 활동성)
- 가용 잔고 조회
- 볼트 입금/출금 전송 (micro-USD 정수 단위)
- 마지막 입금 시각 조회 (스케줄러 재시작 보정용)

사용법:
    from vault_engine.ledger.hyperliquid_client import HyperliquidLedgerClient

    async with HyperliquidLedgerClient(signer=sign_action) as ledger:
        positions = await ledger.get_positions(wallet)
        await ledger.transfer(vault_address, is_deposit=True, usd_micros=84_000_000)
"""

import asyncio
import dataclasses
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logger import logger
from config import settings, get_hyperliquid_api_url, now_utc
from vault_engine.ledger.errors import (
    ConfigurationError,
    InsufficientEquityError,
    LedgerError,
    TransportError,
    classify_rejection,
)
from vault_engine.ledger.types import Position


# ===== 상수 정의 =====
USD_MICROS = 1_000_000
TRADES_LOOKBACK = timedelta(days=7)
MIN_CALL_INTERVAL = 0.2  # 초 (원장 호출 간 최소 간격)

# 서명 함수: (action, nonce) -> signature dict
Signer = Callable[[dict, int], Union[dict, Awaitable[dict]]]


def _safe_float(value: Any, default: float = 0.0) -> float:
    """안전한 float 변환 (None, 빈 문자열, 잘못된 값 처리)"""
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (ValueError, TypeError):
        return default


def _safe_int(value: Any, default: int = 0) -> int:
    """안전한 int 변환"""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def _from_ms(value: Any) -> Optional[datetime]:
    """epoch ms -> UTC datetime (0 또는 잘못된 값은 None)"""
    ms = _safe_int(value)
    if ms <= 0:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def compute_roe_pct(equity_usd: float, pnl_usd: Optional[float]) -> Optional[float]:
    """
    ROE 계산 (미실현 손익 / 원금 기준)

    Example:
        >>> compute_roe_pct(110.0, 10.0)
        10.0
    """
    if pnl_usd is None:
        return None
    basis = equity_usd - pnl_usd
    if basis <= 0:
        return None
    return pnl_usd / basis * 100


class LedgerClient(ABC):
    """
    원장 클라이언트 인터페이스

    엔진은 이 인터페이스만 사용하며, 금액은 전송 경계에서
    micro-USD 정수로 전달됩니다.
    """

    @abstractmethod
    async def get_positions(self, wallet: str) -> list[Position]:
        """보유 볼트 포지션 목록"""

    @abstractmethod
    async def get_available_balance(self, wallet: str) -> float:
        """입금에 사용 가능한 잔고 (USD)"""

    @abstractmethod
    async def transfer(self, vault_address: str, is_deposit: bool, usd_micros: int) -> None:
        """볼트 입금/출금 (실패 시 LedgerError 발생)"""

    @abstractmethod
    async def get_last_deposit_time(self, wallet: str) -> Optional[datetime]:
        """마지막 볼트 입금 시각 (없으면 None)"""

    async def aclose(self) -> None:
        """리소스 정리"""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()


class HyperliquidLedgerClient(LedgerClient):
    """
    Hyperliquid 원장 클라이언트

    조회는 /info, 전송은 /exchange 엔드포인트를 사용합니다.
    전송 액션 서명은 외부에서 주입된 signer가 담당합니다.

    Attributes:
        base_url: API 기본 URL
        timeout: HTTP 타임아웃 (초)
        signer: 액션 서명 함수 (없으면 전송 불가)

    Example:
        >>> ledger = HyperliquidLedgerClient()
        >>> balance = await ledger.get_available_balance("0x...")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        signer: Optional[Signer] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        """
        원장 클라이언트 초기화

        Args:
            base_url: API URL (없으면 설정에서 로드)
            timeout: HTTP 타임아웃 (초)
            signer: 액션 서명 함수
            client: 주입할 httpx.AsyncClient (테스트용)
        """
        self.base_url = (base_url or get_hyperliquid_api_url(settings.IS_TESTNET)).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.LEDGER_HTTP_TIMEOUT
        self.signer = signer
        self._client = client or httpx.AsyncClient(timeout=self.timeout)

        # API 호출 간격
        self._last_call_time: float = 0
        self._min_interval: float = MIN_CALL_INTERVAL

        logger.info(f"Hyperliquid 원장 클라이언트 초기화 ({self.base_url})")

    async def aclose(self) -> None:
        await self._client.aclose()

    # ===== 공통 =====

    async def _rate_limit(self) -> None:
        """API 호출 속도 제한"""
        elapsed = time.monotonic() - self._last_call_time
        if elapsed < self._min_interval:
            await asyncio.sleep(self._min_interval - elapsed)
        self._last_call_time = time.monotonic()

    async def _post(self, path: str, body: dict) -> Any:
        """POST 요청 (HTTP 오류는 TransportError로 변환)"""
        await self._rate_limit()
        try:
            response = await self._client.post(f"{self.base_url}{path}", json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise TransportError(f"{path} {body.get('type') or body.get('action', {}).get('type')}: {e}") from e
        except ValueError as e:
            raise TransportError(f"{path} 응답 파싱 실패: {e}") from e

    async def _info(self, body: dict) -> Any:
        return await self._post("/info", body)

    # ===== 조회 =====

    async def get_positions(self, wallet: str) -> list[Position]:
        """
        보유 볼트 포지션 조회

        지분/잠금은 userVaultEquities, 손익은 vaultDetails의 followerState,
        활동성은 볼트 계정의 clearinghouseState와 최근 7일 체결에서 가져옵니다.
        볼트별 호출은 순차 실행합니다.
        """
        equities = await self._info({"type": "userVaultEquities", "user": wallet}) or []

        positions = []
        for entry in equities:
            vault_address = entry.get("vaultAddress", "")
            if not vault_address:
                continue
            equity_usd = _safe_float(entry.get("equity"))
            locked_until = _from_ms(entry.get("lockedUntilTimestamp"))

            details = await self._info({
                "type": "vaultDetails",
                "vaultAddress": vault_address,
                "user": wallet
            }) or {}
            follower = details.get("followerState") or {}
            pnl_usd = _safe_float(follower.get("pnl"), default=None) if follower else None

            active_count, trades_7d = await self._get_vault_activity(vault_address)

            positions.append(Position(
                vault_address=vault_address,
                equity_usd=equity_usd,
                locked_until=locked_until,
                pnl_usd=pnl_usd,
                roe_pct=compute_roe_pct(equity_usd, pnl_usd),
                active_position_count=active_count,
                trades_last_7d=trades_7d,
                vault_name=details.get("name", "")
            ))

        logger.info(f"볼트 포지션 조회: {len(positions)}개")
        return positions

    async def _get_vault_activity(self, vault_address: str) -> tuple[int, int]:
        """볼트 계정의 (열린 포지션 수, 최근 7일 체결 수)"""
        state = await self._info({"type": "clearinghouseState", "user": vault_address}) or {}
        asset_positions = state.get("assetPositions") or []
        active_count = sum(
            1 for item in asset_positions
            if _safe_float((item.get("position") or {}).get("szi")) != 0
        )

        start_ms = int((now_utc() - TRADES_LOOKBACK).timestamp() * 1000)
        fills = await self._info({
            "type": "userFillsByTime",
            "user": vault_address,
            "startTime": start_ms
        }) or []
        return active_count, len(fills)

    async def get_available_balance(self, wallet: str) -> float:
        """퍼프 계정 출금 가능 잔고 (USD)"""
        state = await self._info({"type": "clearinghouseState", "user": wallet}) or {}
        balance = _safe_float(state.get("withdrawable"))
        logger.info(f"가용 잔고 조회: ${balance:,.2f}")
        return balance

    async def get_last_deposit_time(self, wallet: str) -> Optional[datetime]:
        """비펀딩 원장 이력에서 가장 최근 vaultDeposit 시각"""
        updates = await self._info({
            "type": "userNonFundingLedgerUpdates",
            "user": wallet,
            "startTime": 0
        }) or []

        latest_ms: Optional[int] = None
        for update in updates:
            delta = update.get("delta") or {}
            if delta.get("type") != "vaultDeposit":
                continue
            ms = _safe_int(update.get("time"), default=-1)
            if ms <= 0:
                continue
            if latest_ms is None or ms > latest_ms:
                latest_ms = ms

        return _from_ms(latest_ms) if latest_ms else None

    # ===== 전송 =====

    async def transfer(self, vault_address: str, is_deposit: bool, usd_micros: int) -> None:
        """
        볼트 입금/출금

        Args:
            vault_address: 볼트 주소
            is_deposit: 입금 여부 (False면 출금)
            usd_micros: 금액 (micro-USD 정수)

        Raises:
            ConfigurationError: 서명기 미설정
            InsufficientEquityError: 볼트 지분 부족
            TransferRejectedError: 그 외 원장 거부
            TransportError: 네트워크 오류
        """
        if self.signer is None:
            raise ConfigurationError("LEDGER_SIGNER가 설정되지 않아 전송할 수 없습니다")

        action = {
            "type": "vaultTransfer",
            "vaultAddress": vault_address,
            "isDeposit": is_deposit,
            "usd": int(usd_micros)
        }
        nonce = int(time.time() * 1000)
        signature = self.signer(action, nonce)
        if asyncio.iscoroutine(signature):
            signature = await signature

        data = await self._post("/exchange", {
            "action": action,
            "nonce": nonce,
            "signature": signature,
            "vaultAddress": None
        })

        if not isinstance(data, dict) or data.get("status") != "ok":
            message = data.get("response") if isinstance(data, dict) else data
            raise classify_rejection(str(message), vault_address)


# ===== 모의 원장 (테스트/시뮬레이션용) =====

class MockLedgerClient(LedgerClient):
    """
    모의 원장 클라이언트

    실제 API를 호출하지 않고 잔고/지분 변화를 메모리에서 시뮬레이션합니다.

    Attributes:
        balance: 가용 잔고 (USD)
        positions: 볼트 주소(소문자) -> Position
        transfers: 전송 시도 기록 [(vault, is_deposit, usd_micros), ...]
        withdraw_limits: 볼트별 최대 출금 가능 micro-USD (초과 시 지분 부족)
        failures: 볼트별로 다음 전송에서 발생시킬 예외
    """

    def __init__(
        self,
        balance: float = 0.0,
        positions: Optional[list[Position]] = None,
        last_deposit_time: Optional[datetime] = None
    ):
        self.balance = balance
        self.positions: dict[str, Position] = {
            p.address_key: p for p in (positions or [])
        }
        self.last_deposit_time = last_deposit_time
        self.transfers: list[tuple[str, bool, int]] = []
        self.withdraw_limits: dict[str, int] = {}
        self.failures: dict[str, LedgerError] = {}
        self.fail_last_deposit_lookup = False
        logger.info("모의 원장 클라이언트 초기화")

    async def get_positions(self, wallet: str) -> list[Position]:
        return list(self.positions.values())

    async def get_available_balance(self, wallet: str) -> float:
        return self.balance

    async def get_last_deposit_time(self, wallet: str) -> Optional[datetime]:
        if self.fail_last_deposit_lookup:
            raise TransportError("mock ledger unavailable")
        return self.last_deposit_time

    async def transfer(self, vault_address: str, is_deposit: bool, usd_micros: int) -> None:
        key = vault_address.lower()
        self.transfers.append((vault_address, is_deposit, usd_micros))

        if key in self.failures:
            raise self.failures[key]

        amount = usd_micros / USD_MICROS
        position = self.positions.get(key)

        if is_deposit:
            if amount > self.balance + 1e-9:
                raise classify_rejection("Insufficient balance for deposit", vault_address)
            self.balance -= amount
            if position:
                self.positions[key] = dataclasses.replace(
                    position, equity_usd=position.equity_usd + amount
                )
            else:
                self.positions[key] = Position(
                    vault_address=vault_address,
                    equity_usd=amount,
                    pnl_usd=0.0,
                    roe_pct=0.0,
                    active_position_count=1,
                    trades_last_7d=1
                )
            self.last_deposit_time = now_utc()
            logger.info(f"[모의] 입금: {vault_address} ${amount:,.2f}")
            return

        if position is None:
            raise classify_rejection("Vault not found for user", vault_address)
        limit = self.withdraw_limits.get(key, int(position.equity_usd * USD_MICROS))
        if usd_micros > limit:
            raise InsufficientEquityError("Insufficient vault equity for withdrawal", vault_address)

        remaining = position.equity_usd - amount
        if remaining < 1e-6:
            del self.positions[key]
        else:
            self.positions[key] = dataclasses.replace(position, equity_usd=remaining)
        self.balance += amount
        logger.info(f"[모의] 출금: {vault_address} ${amount:,.2f}")
