"""
logger.py - 로깅 시스템 설정 모듈

이 파일은 loguru를 사용하여 구조화된 로깅을 제공합니다.
시스템/에러 로그 외에 전송 시도 기록과 리밸런싱 라운드 기록을 별도 파일로 분리합니다.

로그 파일:
    system_YYYY-MM-DD.log    INFO 이상 전체
    error_YYYY-MM-DD.log     ERROR 이상
    transfer_YYYY-MM-DD.log  입금/출금 시도 (get_transfer_logger)
    rounds_YYYY-MM-DD.log    라운드 진행 기록 (log_with_context("rebalance_round"))
    debug_YYYY-MM-DD.log     LOG_LEVEL=DEBUG 일 때만

사용법:
    from logger import logger, get_transfer_logger, log_with_context

    logger.info("일반 정보 메시지")
    get_transfer_logger().info("입금 제출: 0xabc... $84.00")
    log_with_context("rebalance_round", dry_run=True).info("라운드 시작")
"""

import functools
import sys
import time
from pathlib import Path
from loguru import logger

# 기본 설정 제거 (loguru의 기본 stderr 출력 제거)
logger.remove()

ROUND_TASK = "rebalance_round"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

ROUND_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[task]} | "
    "{message}"
)


def _is_transfer(record) -> bool:
    return "transfer" in record["extra"]


def _is_round(record) -> bool:
    return record["extra"].get("task") == ROUND_TASK


def _add_file_sink(log_dir: Path, prefix: str, level: str, retention: str, **kwargs) -> None:
    """일자별 로테이션 + gzip 압축 파일 핸들러"""
    logger.add(
        log_dir / f"{prefix}_{{time:YYYY-MM-DD}}.log",
        format=kwargs.pop("format", FILE_FORMAT),
        level=level,
        rotation=kwargs.pop("rotation", "00:00"),
        retention=retention,
        compression="gz",
        encoding="utf-8",
        enqueue=True,
        **kwargs
    )


def setup_logger(
    log_level: str = "INFO",
    log_path: str = "logs",
    enable_console: bool = True,
    enable_file: bool = True,
    transfer_retention: str = "365 days"
):
    """
    로거 초기화 및 설정

    Args:
        log_level: 로그 레벨 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_path: 로그 파일 저장 경로
        enable_console: 콘솔 출력 활성화 여부
        enable_file: 파일 출력 활성화 여부
        transfer_retention: 전송 로그 보관 기간

    Example:
        >>> from logger import setup_logger
        >>> setup_logger(log_level="DEBUG", log_path="./logs")
    """

    log_dir = Path(log_path)
    if enable_file:
        log_dir.mkdir(parents=True, exist_ok=True)

    # 기존 핸들러 모두 제거
    logger.remove()

    # ===== 콘솔 핸들러 =====
    if enable_console:
        logger.add(
            sys.stderr,
            format=CONSOLE_FORMAT,
            level=log_level,
            colorize=True,
            backtrace=True,
            diagnose=True
        )

    # ===== 파일 핸들러 =====
    if enable_file:
        _add_file_sink(log_dir, "system", "INFO", "30 days")
        _add_file_sink(log_dir, "error", "ERROR", "90 days")

        # 전송 시도 기록 (입금/출금 감사용, 장기 보관)
        _add_file_sink(log_dir, "transfer", "INFO", transfer_retention, filter=_is_transfer)

        # 라운드 진행 기록
        _add_file_sink(log_dir, "rounds", "INFO", "90 days", format=ROUND_FORMAT, filter=_is_round)

        if log_level == "DEBUG":
            _add_file_sink(log_dir, "debug", "DEBUG", "7 days", rotation="100 MB")

    logger.debug(f"로깅 시스템 초기화 완료 (레벨: {log_level}, 경로: {log_dir.absolute()})")


def get_transfer_logger():
    """
    전송 전용 로거 반환

    입금/출금 관련 로그는 별도 파일에 저장됩니다.

    Example:
        >>> transfer_logger = get_transfer_logger()
        >>> transfer_logger.info("입금 제출: 0xabc... $84.00")
    """
    return logger.bind(transfer=True)


def log_with_context(task: str, **context):
    """
    작업 컨텍스트가 바인딩된 로거 반환

    task가 "rebalance_round"이면 rounds 로그 파일에도 기록됩니다.

    Args:
        task: 작업 이름 (예: "rebalance_round")
        **context: 추가 컨텍스트 (예: dry_run=True)
    """
    return logger.bind(task=task, **context)


def log_execution_time(func):
    """
    비동기 함수 실행 시간을 로깅하는 데코레이터

    Example:
        @log_execution_time
        async def run_round():
            ...
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.time()
        try:
            result = await func(*args, **kwargs)
            elapsed = time.time() - start_time
            logger.debug(f"{func.__name__} 실행 완료 ({elapsed:.2f}초)")
            return result
        except Exception as e:
            elapsed = time.time() - start_time
            logger.error(f"{func.__name__} 실행 실패 ({elapsed:.2f}초): {e}")
            raise

    return wrapper


# ===== 초기화 =====
# 모듈 import 시 기본 설정으로 초기화
def _initialize_default_logger():
    """기본 로거 초기화 (모듈 로드 시 자동 실행)"""
    try:
        from config import settings
        setup_logger(
            log_level=settings.LOG_LEVEL,
            log_path=settings.LOG_PATH
        )
    except ImportError:
        setup_logger(
            log_level="INFO",
            log_path="logs"
        )


_initialize_default_logger()


if __name__ == "__main__":
    logger.info("정보 메시지 - 일반적인 시스템 정보")
    logger.warning("경고 메시지 - 주의가 필요한 상황")
    get_transfer_logger().info("💸 출금 제출: 0x0000...0000 $120.00")
    log_with_context(ROUND_TASK, dry_run=True).info("라운드 시작")
