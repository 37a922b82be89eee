"""
Intent History Store — append-only, hash-chained audit of every interaction.

Every interpret call and every act call produces exactly one record.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Each record is hashed and chained to the previous record (tamper-evident).
- Every query is scoped to one tenant.
"""

import hashlib
import json
import sqlite3
import threading
from collections import Counter
from datetime import datetime
from typing import List, Optional

from intent_engine.models.history import (
    IntentAnalytics,
    IntentHistoryRecord,
    OperationKind,
)
from intent_engine.models.errors import ErrorKind
from intent_engine.models.wire import as_utc, utc_now


def _record_digest(record: IntentHistoryRecord) -> str:
    record_dict = record.model_dump(mode="json")
    # Signature is what we're computing
    record_dict["signature"] = ""
    record_bytes = json.dumps(record_dict, sort_keys=True, default=str).encode()
    return hashlib.sha256(record_bytes).hexdigest()


class HistoryStore:
    """
    Append-only intent history.
    Prototype: SQLite. Production: PostgreSQL with row-level security.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        # Writes arrive from worker threads
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS intent_history (
                id TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                tenant_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                intent TEXT,
                confidence REAL,
                source TEXT,
                final_state TEXT NOT NULL,
                error_kind TEXT,
                action_success INTEGER,
                timestamp TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_tenant_user
            ON intent_history(tenant_id, user_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_tenant_time
            ON intent_history(tenant_id, timestamp)
        """)
        self._conn.commit()

    def append(self, record: IntentHistoryRecord) -> IntentHistoryRecord:
        """Sign the record, chain it to its predecessor and persist it."""
        with self._lock:
            record = record.model_copy(update={
                "prior_record_hash": self._get_latest_hash(),
                "signature": "",
            })
            record.signature = _record_digest(record)

            result = record.intent_result
            self._conn.execute(
                """
                INSERT INTO intent_history (
                    id, operation, tenant_id, user_id, intent, confidence,
                    source, final_state, error_kind, action_success,
                    timestamp, signature, prior_record_hash, record_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.operation.value,
                    record.tenant_id,
                    record.user_id,
                    self._intent_label(record),
                    result.confidence if result else None,
                    result.source.value if result else None,
                    record.final_state,
                    record.error_kind.value if record.error_kind else None,
                    int(record.action_result.success) if record.action_result else None,
                    record.timestamp.isoformat(),
                    record.signature,
                    record.prior_record_hash,
                    json.dumps(record.model_dump(mode="json"), default=str),
                ),
            )
            self._conn.commit()
        return record

    @staticmethod
    def _intent_label(record: IntentHistoryRecord) -> Optional[str]:
        if record.intent_result:
            return record.intent_result.intent.value
        if record.action_command:
            return record.action_command.type.value
        return None

    def _get_latest_hash(self) -> Optional[str]:
        row = self._conn.execute(
            "SELECT signature FROM intent_history ORDER BY rowid DESC LIMIT 1"
        ).fetchone()
        return row["signature"] if row else None

    def _deserialize(self, row: sqlite3.Row) -> IntentHistoryRecord:
        return IntentHistoryRecord.model_validate_json(row["record_json"])

    def get_by_id(self, tenant_id: str, record_id: str) -> Optional[IntentHistoryRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM intent_history WHERE id = ? AND tenant_id = ?",
            (record_id, tenant_id),
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_recent(
        self, tenant_id: str, user_id: Optional[str] = None, limit: int = 50
    ) -> List[IntentHistoryRecord]:
        """Most recent records for a tenant (optionally one user), oldest first."""
        if user_id is not None:
            rows = self._conn.execute(
                "SELECT record_json FROM intent_history "
                "WHERE tenant_id = ? AND user_id = ? ORDER BY rowid DESC LIMIT ?",
                (tenant_id, user_id, limit),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT record_json FROM intent_history "
                "WHERE tenant_id = ? ORDER BY rowid DESC LIMIT ?",
                (tenant_id, limit),
            ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def analytics(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> IntentAnalytics:
        """Aggregate one tenant's history over [start, end]."""
        start = as_utc(start or datetime.min)
        end = as_utc(end) if end else utc_now()
        rows = self._conn.execute(
            "SELECT operation, intent, confidence, source, error_kind, action_success "
            "FROM intent_history WHERE tenant_id = ? AND timestamp >= ? AND timestamp <= ?",
            (tenant_id, start.isoformat(), end.isoformat()),
        ).fetchall()

        interpretations = [r for r in rows if r["operation"] == OperationKind.INTERPRET.value]
        actions = [r for r in rows if r["operation"] == OperationKind.ACT.value]
        confidences = [r["confidence"] for r in interpretations if r["confidence"] is not None]
        distribution = Counter(r["intent"] for r in interpretations if r["intent"])

        return IntentAnalytics(
            tenant_id=tenant_id,
            start=start,
            end=end,
            total_interpretations=len(interpretations),
            total_actions=len(actions),
            successful_actions=sum(1 for r in actions if r["action_success"] == 1),
            rate_limited=sum(1 for r in rows if r["error_kind"] == ErrorKind.RATE_LIMITED.value),
            fallback_parses=sum(1 for r in interpretations if r["source"] == "heuristic"),
            average_confidence=(
                round(sum(confidences) / len(confidences), 4) if confidences else 0.0
            ),
            intent_distribution=dict(distribution),
        )

    def verify_chain_integrity(self) -> bool:
        """Verify no records have been tampered with."""
        rows = self._conn.execute(
            "SELECT record_json, signature FROM intent_history ORDER BY rowid"
        ).fetchall()

        prior_sig = None
        for row in rows:
            record = self._deserialize(row)
            if record.signature != row["signature"]:
                return False
            if record.signature != _record_digest(record):
                return False
            if record.prior_record_hash != prior_sig:
                return False
            prior_sig = record.signature
        return True

    def count(self, tenant_id: Optional[str] = None) -> int:
        if tenant_id is None:
            row = self._conn.execute("SELECT COUNT(*) as cnt FROM intent_history").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) as cnt FROM intent_history WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
        return row["cnt"]

    def health_check(self) -> bool:
        try:
            self._conn.execute("SELECT 1").fetchone()
        except sqlite3.Error:
            return False
        return True

    def close(self) -> None:
        self._conn.close()
