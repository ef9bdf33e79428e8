"""
errors.py - 원장 오류 분류

원장 경계에서 오류를 한 번만 분류하고, 상위 로직은 메시지 문자열이
아니라 예외 타입으로 분기합니다.

    ConfigurationError          지갑/서명기 미설정 (시작 거부)
    LedgerError
     ├─ InsufficientEquityError  볼트 지분 부족 (금액 축소 재시도 대상)
     ├─ TransferRejectedError    그 외 원장 거부
     └─ TransportError           네트워크/HTTP/응답 형식 오류
"""

INSUFFICIENT_EQUITY_MARKER = "insufficient vault equity"


class ConfigurationError(RuntimeError):
    """필수 설정 누락 (지갑, 서명기 등)"""


class LedgerError(Exception):
    """원장 호출 실패의 기본 클래스"""

    def __init__(self, message: str, vault_address: str = ""):
        super().__init__(message)
        self.message = message
        self.vault_address = vault_address


class InsufficientEquityError(LedgerError):
    """출금 요청 금액이 인출 가능한 볼트 지분을 초과"""


class TransferRejectedError(LedgerError):
    """원장이 전송을 거부 (지분 부족 외 사유)"""


class TransportError(LedgerError):
    """HTTP/네트워크 오류 또는 응답 파싱 실패"""


def classify_rejection(message: str, vault_address: str = "") -> LedgerError:
    """
    원장 거부 메시지를 예외 타입으로 변환

    Args:
        message: 원장이 반환한 오류 메시지
        vault_address: 대상 볼트 주소

    Returns:
        InsufficientEquityError 또는 TransferRejectedError
    """
    text = message or "unknown ledger error"
    if INSUFFICIENT_EQUITY_MARKER in text.lower():
        return InsufficientEquityError(text, vault_address)
    return TransferRejectedError(text, vault_address)
