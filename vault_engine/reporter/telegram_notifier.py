"""
telegram_notifier.py - 텔레그램 알림 모듈

이 파일은 텔레그램 봇을 통한 알림 기능을 제공합니다.

주요 기능:
- 메시지 전송 (Markdown 실패 시 plain text 재시도)
- 리밸런싱 라운드 요약 전송
- 에러 알림 전송
- 시스템 시작/종료 알림

사용법:
    from vault_engine.reporter.telegram_notifier import TelegramNotifier

    notifier = TelegramNotifier()
    notifier.send_message("🚀 시스템 시작!")
    notifier.send_round_summary(result)
"""

from typing import Optional

import httpx

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from logger import logger
from config import settings, now_utc
from vault_engine.rebalancer.models import RoundResult, TransferStatus


def _short(address: str) -> str:
    """0x1234...abcd 형식"""
    if len(address) <= 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


class TelegramNotifier:
    """
    텔레그램 봇 알림

    토큰/채팅 ID가 없으면 비활성화되며 모든 전송은 False를 반환합니다.

    Attributes:
        bot_token: 봇 토큰
        chat_id: 채팅 ID

    Example:
        >>> notifier = TelegramNotifier()
        >>> notifier.send_round_summary(result)
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None
    ):
        self.bot_token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN
        self.chat_id = chat_id if chat_id is not None else settings.TELEGRAM_CHAT_ID

        self.base_url = f"https://api.telegram.org/bot{self.bot_token}"
        self._enabled = bool(self.bot_token and self.chat_id)

        if self._enabled:
            logger.info("텔레그램 알림 초기화 완료")
        else:
            logger.warning("텔레그램 설정 없음 (알림 비활성화)")

    @property
    def enabled(self) -> bool:
        return self._enabled

    # ===== 메시지 전송 =====

    def send_message(
        self,
        text: str,
        parse_mode: str = "Markdown",
        disable_notification: bool = False
    ) -> bool:
        """
        텍스트 메시지 전송

        Args:
            text: 메시지 내용
            parse_mode: 파싱 모드 ("Markdown" 또는 "HTML")
            disable_notification: 알림 음소거

        Returns:
            전송 성공 여부
        """
        if not self._enabled:
            logger.debug(f"[텔레그램 비활성] {text[:50]}...")
            return False

        url = f"{self.base_url}/sendMessage"
        data = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": parse_mode,
            "disable_notification": disable_notification
        }

        try:
            result = httpx.post(url, json=data, timeout=10).json()
            if result.get("ok"):
                logger.debug("텔레그램 메시지 전송 성공")
                return True

            logger.warning(f"텔레그램 전송 실패 (parse_mode={parse_mode}): {result.get('description', '')}")

            # Markdown 파싱 실패 시 plain text로 재시도
            if parse_mode:
                logger.info("텔레그램 plain text로 재시도")
                fallback = {
                    "chat_id": self.chat_id,
                    "text": text,
                    "disable_notification": disable_notification
                }
                fallback_result = httpx.post(url, json=fallback, timeout=10).json()
                if fallback_result.get("ok"):
                    return True
                logger.error(f"텔레그램 plain text 전송도 실패: {fallback_result.get('description')}")

            return False

        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"텔레그램 전송 오류: {e}")
            return False

    # ===== 시스템 알림 =====

    def send_system_start(self, dry_run: bool = True) -> bool:
        """시스템 시작 알림"""
        text = f"""
🚀 *볼트 리밸런서 시작*

📅 {now_utc().strftime("%Y-%m-%d %H:%M:%S")} UTC
⚙️ 모드: {"드라이런" if dry_run else "실전"}
"""
        return self.send_message(text)

    def send_system_stop(self, reason: str = "") -> bool:
        """시스템 종료 알림"""
        text = f"""
🔴 *볼트 리밸런서 종료*

📅 {now_utc().strftime("%Y-%m-%d %H:%M:%S")} UTC
📝 사유: {reason or "정상 종료"}
"""
        return self.send_message(text)

    def send_error_alert(
        self,
        error_type: str,
        message: str,
        details: Optional[str] = None
    ) -> bool:
        """
        에러 알림

        Args:
            error_type: 에러 유형
            message: 에러 메시지
            details: 상세 정보 (500자까지)
        """
        text = f"""
🚨 *에러 발생*

⚠️ 유형: {error_type}
📝 메시지: {message}
📅 시간: {now_utc().strftime("%H:%M:%S")} UTC
"""
        if details:
            text += f"\n📋 상세:\n```\n{details[:500]}\n```"

        return self.send_message(text)

    # ===== 라운드 요약 =====

    def format_round_summary(self, result: RoundResult) -> str:
        """라운드 결과를 텔레그램 메시지로 변환"""
        mode = "드라이런" if result.dry_run else "실전"
        lines = [
            f"🔄 *리밸런싱 라운드 ({mode})*",
            "",
            f"📅 {result.started_at.strftime('%Y-%m-%d %H:%M')} UTC",
            f"⭐ 추천 볼트: {len(result.recommended)}개",
        ]

        if result.withdrawals:
            lines.append("")
            lines.append(f"💸 *출금 ({len(result.withdrawals)}건)*")
            for action in result.withdrawals:
                lines.append(f"  • {_short(action.vault_address)} ${action.usd:,.2f} "
                             f"[{action.status.value}] {action.reason or ''}".rstrip())

        if result.tp_withdrawals:
            lines.append("")
            lines.append(f"💰 *익절 ({len(result.tp_withdrawals)}건)*")
            for action in result.tp_withdrawals:
                lines.append(f"  • {_short(action.vault_address)} ${action.usd:,.2f} [{action.status.value}]")

        if result.deposits:
            deposits = result.deposits
            deposited = sum(a.usd for a in deposits.actions
                            if a.status in (TransferStatus.SUBMITTED, TransferStatus.PREPARED))
            lines.append("")
            lines.append(f"📥 *입금*: 제출 {deposits.submitted} / 건너뜀 {deposits.skipped} / 오류 {deposits.errors}")
            lines.append(f"  • 금액: ${deposited:,.2f}")

        if result.warnings:
            lines.append("")
            lines.append("⚠️ *경고*")
            lines.extend(f"  • {w}" for w in result.warnings)

        return "\n".join(lines)

    def send_round_summary(self, result: RoundResult) -> bool:
        """라운드 요약 전송"""
        return self.send_message(self.format_round_summary(result))


# ===== 편의 함수 =====

def send_telegram_error(error_type: str, message: str) -> bool:
    """텔레그램 에러 알림 (편의 함수)"""
    notifier = TelegramNotifier()
    return notifier.send_error_alert(error_type, message)
