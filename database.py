"""
database.py - SQLite 데이터베이스 관리 모듈

이 파일은 리밸런싱 라운드 이력을 저장합니다.
- 테이블 생성 및 관리
- 라운드 결과 / 전송 결과 저장
- 최근 라운드 조회

엔진은 이력을 쓰기만 하며, 라운드 계산에는 사용하지 않습니다.

사용법:
    from database import Database

    db = Database()
    db.connect()
    db.init_tables()
    round_id = db.save_round(result)
    rounds = db.get_recent_rounds(10)
    db.close()
"""

import json
import sqlite3
from pathlib import Path
from typing import Optional
from contextlib import contextmanager

from logger import logger
from vault_engine.rebalancer.models import RoundResult, TransferAction


class Database:
    """
    SQLite 데이터베이스 관리 클래스

    Attributes:
        db_path: 데이터베이스 파일 경로
        conn: SQLite 연결 객체

    Example:
        >>> db = Database("data/rebalance.db")
        >>> db.connect()
        >>> db.init_tables()
        >>> db.close()
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        데이터베이스 초기화

        Args:
            db_path: DB 파일 경로 (None이면 config에서 로드)
        """
        if db_path is None:
            from config import settings
            db_path = settings.DATABASE_PATH

        self.db_path = Path(db_path)
        self.conn: Optional[sqlite3.Connection] = None

        # 데이터 디렉토리 생성
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def connect(self) -> None:
        """
        데이터베이스 연결

        연결 후 row_factory를 설정하여 딕셔너리 형태로 데이터 반환
        """
        try:
            self.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0  # 락 대기 시간
            )
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA foreign_keys=ON")

            logger.info(f"📁 데이터베이스 연결 성공: {self.db_path}")

        except sqlite3.Error as e:
            logger.error(f"데이터베이스 연결 실패: {e}")
            raise

    def close(self) -> None:
        """데이터베이스 연결 종료"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.info("데이터베이스 연결 종료")

    @contextmanager
    def get_cursor(self):
        """
        커서를 반환하는 컨텍스트 매니저

        자동으로 커밋/롤백 처리

        Example:
            >>> with db.get_cursor() as cursor:
            >>>     cursor.execute("SELECT * FROM rebalance_rounds")
            >>>     rows = cursor.fetchall()
        """
        if not self.conn:
            raise RuntimeError("데이터베이스가 연결되지 않았습니다. connect()를 먼저 호출하세요.")

        cursor = self.conn.cursor()
        try:
            yield cursor
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error(f"데이터베이스 작업 실패: {e}")
            raise
        finally:
            cursor.close()

    def init_tables(self) -> None:
        """
        모든 테이블 생성

        이미 존재하는 테이블은 무시됩니다 (IF NOT EXISTS 사용)
        """
        with self.get_cursor() as cursor:
            # ===== 1. 라운드 이력 테이블 =====
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS rebalance_rounds (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    started_at TIMESTAMP NOT NULL,
                    finished_at TIMESTAMP,
                    dry_run BOOLEAN NOT NULL,
                    recommended_count INTEGER DEFAULT 0,
                    withdrawal_count INTEGER DEFAULT 0,
                    tp_withdrawal_count INTEGER DEFAULT 0,
                    deposits_submitted INTEGER DEFAULT 0,
                    deposits_skipped INTEGER DEFAULT 0,
                    deposits_errors INTEGER DEFAULT 0,
                    total_deposit_usd REAL DEFAULT 0,
                    warnings TEXT,
                    payload TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_rounds_started
                ON rebalance_rounds(started_at)
            """)

            # ===== 2. 전송 결과 테이블 =====
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transfer_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    round_id INTEGER NOT NULL,
                    kind VARCHAR(20) NOT NULL,
                    vault_address VARCHAR(66) NOT NULL,
                    usd_micros INTEGER NOT NULL,
                    status VARCHAR(10) NOT NULL,
                    reason VARCHAR(30),
                    error TEXT,
                    FOREIGN KEY (round_id) REFERENCES rebalance_rounds(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_actions_vault
                ON transfer_actions(vault_address)
            """)

        logger.info("✅ 데이터베이스 테이블 초기화 완료")

    # ===== 라운드 이력 =====

    def save_round(self, result: RoundResult) -> int:
        """
        라운드 결과 저장

        Args:
            result: RoundResult

        Returns:
            저장된 라운드 ID
        """
        deposits = result.deposits
        total_deposit = result.plan.total_deposit_usd if result.plan else 0.0

        with self.get_cursor() as cursor:
            cursor.execute("""
                INSERT INTO rebalance_rounds
                (started_at, finished_at, dry_run, recommended_count,
                 withdrawal_count, tp_withdrawal_count,
                 deposits_submitted, deposits_skipped, deposits_errors,
                 total_deposit_usd, warnings, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                result.started_at.isoformat(),
                result.finished_at.isoformat() if result.finished_at else None,
                result.dry_run,
                len(result.recommended),
                len(result.withdrawals),
                len(result.tp_withdrawals),
                deposits.submitted if deposits else 0,
                deposits.skipped if deposits else 0,
                deposits.errors if deposits else 0,
                total_deposit,
                json.dumps(result.warnings, ensure_ascii=False),
                json.dumps(result.to_dict(), ensure_ascii=False)
            ))
            round_id = cursor.lastrowid

            rows = [("withdrawal", a) for a in result.withdrawals]
            rows += [("take-profit", a) for a in result.tp_withdrawals]
            rows += [("deposit", a) for a in (deposits.actions if deposits else [])]
            cursor.executemany("""
                INSERT INTO transfer_actions
                (round_id, kind, vault_address, usd_micros, status, reason, error)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [self._action_row(round_id, kind, action) for kind, action in rows])

        logger.debug(f"라운드 이력 저장: #{round_id} (전송 {len(rows)}건)")
        return round_id

    @staticmethod
    def _action_row(round_id: int, kind: str, action: TransferAction) -> tuple:
        return (
            round_id,
            kind,
            action.vault_address,
            action.usd_micros,
            action.status.value,
            action.reason,
            action.error
        )

    def get_recent_rounds(self, limit: int = 10) -> list[dict]:
        """
        최근 라운드 조회 (최신순)

        Args:
            limit: 조회 개수

        Returns:
            라운드 리스트 (warnings는 리스트로 복원)
        """
        with self.get_cursor() as cursor:
            cursor.execute("""
                SELECT id, started_at, finished_at, dry_run, recommended_count,
                       withdrawal_count, tp_withdrawal_count,
                       deposits_submitted, deposits_skipped, deposits_errors,
                       total_deposit_usd, warnings
                FROM rebalance_rounds
                ORDER BY started_at DESC, id DESC
                LIMIT ?
            """, (limit,))

            rounds = []
            for row in cursor.fetchall():
                item = dict(row)
                item["dry_run"] = bool(item["dry_run"])
                item["warnings"] = json.loads(item["warnings"]) if item["warnings"] else []
                rounds.append(item)
            return rounds

    def get_round_actions(self, round_id: int) -> list[dict]:
        """라운드의 전송 결과 조회"""
        with self.get_cursor() as cursor:
            cursor.execute("""
                SELECT kind, vault_address, usd_micros, status, reason, error
                FROM transfer_actions
                WHERE round_id = ?
                ORDER BY id
            """, (round_id,))

            return [dict(row) for row in cursor.fetchall()]


# ===== 편의 함수 =====

def get_database(db_path: Optional[str] = None) -> Database:
    """
    연결/초기화된 Database 인스턴스 반환

    Returns:
        연결된 Database 인스턴스
    """
    db = Database(db_path)
    db.connect()
    db.init_tables()
    return db
