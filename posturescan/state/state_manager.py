"""SQLite-backed scan record store and credit ledger.

WHY THIS EXISTS:
- The orchestrator needs somewhere to persist scan state and to take credits
- The engine itself only talks to the ScanStore / CreditLedger protocols;
  this is the reference implementation the CLI and the tests use

ARCHITECTURE:
- Single SQLite DB file (default state/posture.db)
- WAL mode for concurrent reads + single writer
- Tables: users, credit_transactions, scans
- Credit deduction is one BEGIN IMMEDIATE transaction: read balance, check,
  write balance, append ledger row. Two concurrent scans for the same user
  can never both spend the same credit.
"""

import sqlite3
import json
import logging
import uuid
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple, Union
from datetime import datetime
from contextlib import contextmanager

from posturescan.util.time import now_utc
from posturescan.util.types import CreditDeduction, Scan, ScanStatus, ScanType

logger = logging.getLogger(__name__)

JSON_FIELDS = ('ssl_details', 'header_details', 'dns_details')
UPDATABLE_FIELDS = {
    'status', 'credits_used', 'security_score', 'ssl_grade', 'error_message',
} | set(JSON_FIELDS)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class StateManager:
    """Persistent scans + credits using SQLite.

    Implements both collaborator protocols the orchestrator expects:
    get_scan/update_scan (ScanStore) and deduct_credits (CreditLedger).
    """

    def __init__(self, db_path: Union[str, Path]):
        """Initialize state manager, creating the DB and its parent dir if needed."""
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()
        logger.info(f"State manager initialized: {self.db_path}")

    @contextmanager
    def _get_conn(self, timeout: int = 10):
        """Get a database connection with proper configuration.

        WHY busy_timeout: concurrent deductions briefly contend for the write lock.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=timeout)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute(f"PRAGMA busy_timeout={timeout * 1000}")

        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    credits INTEGER NOT NULL DEFAULT 0,
                    total_scans INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
            """)

            # Append-only ledger; amount is negative for usage
            conn.execute("""
                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    description TEXT,
                    balance_after INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tx_user ON credit_transactions(user_id, created_at)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS scans (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    domain TEXT NOT NULL,
                    status TEXT NOT NULL,
                    scan_type TEXT NOT NULL,
                    credits_used INTEGER NOT NULL DEFAULT 0,
                    security_score INTEGER,
                    ssl_grade TEXT,
                    ssl_details TEXT,
                    header_details TEXT,
                    dns_details TEXT,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_scans_user ON scans(user_id, created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_scans_status ON scans(status)")

            conn.commit()

    # ===== Users and credits =====

    def create_user(self, user_id: str, credits: int = 0) -> int:
        """Create a user if missing. Returns the current balance."""
        now_iso = now_utc().isoformat()
        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO users (id, credits, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO NOTHING
            """, (user_id, credits, now_iso))
            conn.commit()

        return self.get_balance(user_id)

    def get_balance(self, user_id: str) -> Optional[int]:
        """Current credit balance, or None for an unknown user."""
        with self._get_conn() as conn:
            row = conn.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
            return row['credits'] if row else None

    def add_credits(self, user_id: str, amount: int, description: str = "Credit top-up") -> int:
        """Add credits and record a PURCHASE transaction. Returns the new balance."""
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")

        now_iso = now_utc().isoformat()
        with self._get_conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
                if row is None:
                    raise ValueError(f"Unknown user: {user_id}")

                balance = row['credits'] + amount
                conn.execute("UPDATE users SET credits = ? WHERE id = ?", (balance, user_id))
                conn.execute("""
                    INSERT INTO credit_transactions
                        (user_id, amount, type, description, balance_after, created_at)
                    VALUES (?, ?, 'PURCHASE', ?, ?, ?)
                """, (user_id, amount, description, balance, now_iso))
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        logger.info(f"Added {amount} credit(s) to {user_id}, balance now {balance}")
        return balance

    def deduct_credits(self, user_id: str, amount: int, description: str) -> CreditDeduction:
        """Atomically check and deduct credits.

        WHY BEGIN IMMEDIATE: takes the write lock before reading the balance,
        so the check and the deduction see the same value.

        Returns success=False (never raises) when the balance is short or the
        user is unknown.
        """
        now_iso = now_utc().isoformat()
        with self._get_conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT credits FROM users WHERE id = ?", (user_id,)).fetchone()
                if row is None or row['credits'] < amount:
                    conn.rollback()
                    balance = row['credits'] if row else 0
                    logger.info(f"Deduction of {amount} refused for {user_id} (balance {balance})")
                    return CreditDeduction(success=False, new_balance=balance)

                balance = row['credits'] - amount
                conn.execute("""
                    UPDATE users SET credits = ?, total_scans = total_scans + 1 WHERE id = ?
                """, (balance, user_id))
                conn.execute("""
                    INSERT INTO credit_transactions
                        (user_id, amount, type, description, balance_after, created_at)
                    VALUES (?, ?, 'USAGE', ?, ?, ?)
                """, (user_id, -amount, description, balance, now_iso))
                conn.commit()
                return CreditDeduction(success=True, new_balance=balance)

            except Exception as e:
                conn.rollback()
                logger.error(f"Failed to deduct credits for {user_id}: {e}")
                raise

    def get_transactions(self, user_id: str) -> List[Dict[str, Any]]:
        """Ledger rows for a user, oldest first."""
        with self._get_conn() as conn:
            cursor = conn.execute("""
                SELECT amount, type, description, balance_after, created_at
                FROM credit_transactions WHERE user_id = ? ORDER BY id
            """, (user_id,))
            return [dict(row) for row in cursor.fetchall()]

    # ===== Scans =====

    def _row_to_scan(self, row: sqlite3.Row) -> Scan:
        return Scan(
            id=row['id'],
            user_id=row['user_id'],
            domain=row['domain'],
            status=ScanStatus(row['status']),
            scan_type=ScanType(row['scan_type']),
            credits_used=row['credits_used'],
            security_score=row['security_score'],
            ssl_grade=row['ssl_grade'],
            ssl_details=json.loads(row['ssl_details']) if row['ssl_details'] else None,
            header_details=json.loads(row['header_details']) if row['header_details'] else None,
            dns_details=json.loads(row['dns_details']) if row['dns_details'] else None,
            error_message=row['error_message'],
            created_at=_parse_time(row['created_at']),
            updated_at=_parse_time(row['updated_at']),
            completed_at=_parse_time(row['completed_at']),
        )

    def create_scan(self, user_id: str, domain: str, scan_type: Union[ScanType, str],
                    scan_id: Optional[str] = None) -> Scan:
        """Insert a PENDING scan record."""
        scan_id = scan_id or uuid.uuid4().hex
        scan_type = ScanType(scan_type)
        now_iso = now_utc().isoformat()

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO scans (id, user_id, domain, status, scan_type, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (scan_id, user_id, domain, ScanStatus.PENDING.value, scan_type.value, now_iso, now_iso))
            conn.commit()

        logger.debug(f"Created scan {scan_id} ({scan_type.value} {domain}) for {user_id}")
        return self.get_scan(scan_id)

    def get_scan(self, scan_id: str) -> Optional[Scan]:
        with self._get_conn() as conn:
            row = conn.execute("SELECT * FROM scans WHERE id = ?", (scan_id,)).fetchone()
            return self._row_to_scan(row) if row else None

    def update_scan(self, scan_id: str, **fields: Any) -> Scan:
        """Update selected columns of a scan.

        Always bumps updated_at. Moving to COMPLETED stamps completed_at, any
        other status clears it.

        Raises:
            ValueError: unknown field or unknown scan id
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update scan fields: {sorted(unknown)}")

        values: Dict[str, Any] = {}
        for name, value in fields.items():
            if name == 'status':
                value = ScanStatus(value).value
            elif name in JSON_FIELDS and value is not None:
                value = json.dumps(value)
            values[name] = value

        now_iso = now_utc().isoformat()
        values['updated_at'] = now_iso
        if 'status' in values:
            values['completed_at'] = now_iso if values['status'] == ScanStatus.COMPLETED.value else None

        assignments = ', '.join(f"{name} = ?" for name in values)
        with self._get_conn() as conn:
            cursor = conn.execute(
                f"UPDATE scans SET {assignments} WHERE id = ?",
                list(values.values()) + [scan_id]
            )
            conn.commit()
            if cursor.rowcount == 0:
                raise ValueError(f"Scan not found: {scan_id}")

        return self.get_scan(scan_id)

    def list_user_scans(self, user_id: str, status: Optional[Union[ScanStatus, str]] = None,
                        scan_type: Optional[Union[ScanType, str]] = None,
                        page: int = 1, limit: int = 10) -> Tuple[List[Scan], int, bool]:
        """Newest-first page of a user's scans.

        Returns:
            (scans, total matching, whether more pages follow)
        """
        page = max(1, page)
        limit = max(1, limit)

        clauses = ["user_id = ?"]
        params: List[Any] = [user_id]
        if status is not None:
            clauses.append("status = ?")
            params.append(ScanStatus(status).value)
        if scan_type is not None:
            clauses.append("scan_type = ?")
            params.append(ScanType(scan_type).value)
        where = ' AND '.join(clauses)

        with self._get_conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS cnt FROM scans WHERE {where}", params).fetchone()['cnt']
            cursor = conn.execute(f"""
                SELECT * FROM scans WHERE {where}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ? OFFSET ?
            """, params + [limit, (page - 1) * limit])
            scans = [self._row_to_scan(row) for row in cursor.fetchall()]

        return scans, total, page * limit < total

    def get_stats(self) -> Dict[str, Any]:
        """Scan counts by status, for the CLI summary."""
        with self._get_conn() as conn:
            cursor = conn.execute("SELECT status, COUNT(*) AS cnt FROM scans GROUP BY status")
            return {row['status']: row['cnt'] for row in cursor.fetchall()}
