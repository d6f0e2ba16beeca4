"""SQLite access layer for the audit chain, plans, approvals and simulations."""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Mapping, Sequence

from aws_ops_gate.audit.models import (
    Anchor,
    ApprovalRecord,
    AuditLogEntry,
    AuditQuery,
    PlanRecord,
)
from aws_ops_gate.utils.serialization import canonical_json

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class SqliteStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
                chain_position INTEGER PRIMARY KEY,
                entry_id TEXT NOT NULL UNIQUE,
                event_type TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                result TEXT NOT NULL,
                connection_id TEXT,
                plan_id TEXT,
                payload TEXT NOT NULL,
                prev_hash TEXT NOT NULL,
                entry_hash TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_anchors (
                anchor_id TEXT PRIMARY KEY,
                anchor_hash TEXT NOT NULL,
                start_position INTEGER NOT NULL,
                end_position INTEGER NOT NULL UNIQUE,
                entry_count INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS plans (
                plan_id TEXT PRIMARY KEY,
                connection_id TEXT,
                dsl_hash TEXT NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS approvals (
                approval_id TEXT PRIMARY KEY,
                plan_id TEXT NOT NULL,
                connection_id TEXT NOT NULL,
                dsl_hash TEXT NOT NULL,
                token TEXT NOT NULL,
                status TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                consumed_at TEXT,
                FOREIGN KEY(plan_id) REFERENCES plans(plan_id)
            );

            CREATE TABLE IF NOT EXISTS simulations (
                plan_id TEXT NOT NULL,
                dsl_hash TEXT NOT NULL,
                can_promote INTEGER NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (plan_id, dsl_hash),
                FOREIGN KEY(plan_id) REFERENCES plans(plan_id)
            );

            CREATE INDEX IF NOT EXISTS idx_audit_connection ON audit_entries(connection_id);
            CREATE INDEX IF NOT EXISTS idx_audit_event_type ON audit_entries(event_type);
            CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_entries(timestamp);
            CREATE INDEX IF NOT EXISTS idx_plan_connection ON plans(connection_id);
            CREATE INDEX IF NOT EXISTS idx_approval_plan_id ON approvals(plan_id, connection_id);
            """
        )
        self._conn.commit()

    def execute(
        self,
        query: str,
        params: _SqlParams,
    ) -> None:
        with self._lock:
            self._conn.execute(query, params)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def fetch_one(
        self,
        query: str,
        params: _SqlParams,
    ) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(
        self,
        query: str,
        params: _SqlParams,
    ) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    # -- audit chain -------------------------------------------------------

    def insert_entry(self, entry: AuditLogEntry, anchor: Anchor | None = None) -> None:
        """Persist an entry, and the anchor it closes if any, in one transaction."""
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO audit_entries (
                        chain_position, entry_id, event_type, timestamp, result,
                        connection_id, plan_id, payload, prev_hash, entry_hash
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.chain_position,
                        entry.entry_id,
                        entry.event_type,
                        entry.timestamp,
                        entry.result,
                        entry.connection_id,
                        entry.action.get("planId"),
                        canonical_json(entry.hashed_body()),
                        entry.prev_hash,
                        entry.entry_hash,
                    ),
                )
                if anchor is not None:
                    self._conn.execute(
                        """
                        INSERT INTO audit_anchors (
                            anchor_id, anchor_hash, start_position, end_position,
                            entry_count, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            anchor.anchor_id,
                            anchor.anchor_hash,
                            anchor.start_position,
                            anchor.end_position,
                            anchor.entry_count,
                            anchor.created_at,
                        ),
                    )

    def last_entry(self) -> AuditLogEntry | None:
        row = self.fetch_one(
            "SELECT * FROM audit_entries ORDER BY chain_position DESC LIMIT 1", ()
        )
        return _row_to_entry(row) if row is not None else None

    def get_entry(self, chain_position: int) -> AuditLogEntry | None:
        row = self.fetch_one(
            "SELECT * FROM audit_entries WHERE chain_position = ?", (chain_position,)
        )
        return _row_to_entry(row) if row is not None else None

    def entries_between(self, start: int, end: int | None) -> list[AuditLogEntry]:
        if end is None:
            rows = self.fetch_all(
                "SELECT * FROM audit_entries WHERE chain_position >= ? ORDER BY chain_position",
                (start,),
            )
        else:
            rows = self.fetch_all(
                "SELECT * FROM audit_entries WHERE chain_position BETWEEN ? AND ? "
                "ORDER BY chain_position",
                (start, end),
            )
        return [_row_to_entry(row) for row in rows]

    def entry_hashes_between(self, start: int, end: int) -> list[str]:
        rows = self.fetch_all(
            "SELECT entry_hash FROM audit_entries WHERE chain_position BETWEEN ? AND ? "
            "ORDER BY chain_position",
            (start, end),
        )
        return [row["entry_hash"] for row in rows]

    def query_entries(self, query: AuditQuery) -> tuple[list[AuditLogEntry], int]:
        clauses: list[str] = []
        params: list[_SqlValue] = []
        if query.connection_id:
            clauses.append("connection_id = ?")
            params.append(query.connection_id)
        if query.event_type:
            clauses.append("event_type = ?")
            params.append(query.event_type)
        if query.start_date:
            clauses.append("timestamp >= ?")
            params.append(query.start_date)
        if query.end_date:
            clauses.append("timestamp <= ?")
            params.append(query.end_date)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._lock:
            total = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM audit_entries {where}", params
            ).fetchone()["n"]
            rows = self._conn.execute(
                f"SELECT * FROM audit_entries {where} "
                "ORDER BY chain_position DESC LIMIT ? OFFSET ?",
                [*params, query.limit, query.offset],
            ).fetchall()
        return [_row_to_entry(row) for row in rows], int(total)

    # -- anchors -----------------------------------------------------------

    def latest_anchor(self) -> Anchor | None:
        row = self.fetch_one(
            "SELECT * FROM audit_anchors ORDER BY end_position DESC LIMIT 1", ()
        )
        return Anchor(**dict(row)) if row is not None else None

    def first_anchor(self) -> Anchor | None:
        row = self.fetch_one(
            "SELECT * FROM audit_anchors ORDER BY end_position ASC LIMIT 1", ()
        )
        return Anchor(**dict(row)) if row is not None else None

    def count_anchors(self) -> int:
        row = self.fetch_one("SELECT COUNT(*) AS n FROM audit_anchors", ())
        return int(row["n"]) if row is not None else 0

    def anchors_within(self, start: int, end: int) -> list[Anchor]:
        rows = self.fetch_all(
            "SELECT * FROM audit_anchors WHERE start_position >= ? AND end_position <= ? "
            "ORDER BY end_position",
            (start, end),
        )
        return [Anchor(**dict(row)) for row in rows]

    # -- plans -------------------------------------------------------------

    def save_plan(self, plan: PlanRecord) -> None:
        self.execute(
            """
            INSERT INTO plans (
                plan_id, connection_id, dsl_hash, payload, status, created_at, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                plan.plan_id,
                plan.connection_id,
                plan.dsl_hash,
                plan.payload,
                plan.status,
                plan.created_at,
                plan.expires_at,
            ),
        )

    def get_plan(self, plan_id: str) -> PlanRecord | None:
        row = self.fetch_one("SELECT * FROM plans WHERE plan_id = ?", (plan_id,))
        if row is None:
            return None
        return PlanRecord(**dict(row))

    def update_plan_status(self, plan_id: str, status: str) -> None:
        self.execute("UPDATE plans SET status = ? WHERE plan_id = ?", (status, plan_id))

    # -- approvals ---------------------------------------------------------

    def insert_approval(self, approval: ApprovalRecord) -> None:
        self.execute(
            """
            INSERT INTO approvals (
                approval_id, plan_id, connection_id, dsl_hash, token, status,
                expires_at, created_at, consumed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                approval.approval_id,
                approval.plan_id,
                approval.connection_id,
                approval.dsl_hash,
                approval.token,
                approval.status,
                approval.expires_at,
                approval.created_at,
                approval.consumed_at,
            ),
        )

    def get_approval(self, approval_id: str) -> ApprovalRecord | None:
        row = self.fetch_one(
            "SELECT * FROM approvals WHERE approval_id = ?", (approval_id,)
        )
        if row is None:
            return None
        return ApprovalRecord(**dict(row))

    def find_issued_approval(
        self, plan_id: str, connection_id: str, dsl_hash: str
    ) -> ApprovalRecord | None:
        row = self.fetch_one(
            (
                "SELECT * FROM approvals WHERE plan_id = ? AND connection_id = ? "
                "AND dsl_hash = ? AND status = 'issued' ORDER BY created_at DESC LIMIT 1"
            ),
            (plan_id, connection_id, dsl_hash),
        )
        if row is None:
            return None
        return ApprovalRecord(**dict(row))

    def has_consumed_approval(self, plan_id: str, dsl_hash: str) -> bool:
        row = self.fetch_one(
            "SELECT 1 FROM approvals WHERE plan_id = ? AND dsl_hash = ? AND status = 'consumed'",
            (plan_id, dsl_hash),
        )
        return row is not None

    def consume_approval(self, approval_id: str, consumed_at: str) -> bool:
        """Atomically transition an issued approval to consumed.

        Returns True if exactly one row was updated (i.e. the caller won the
        race), False otherwise.  Two concurrent executions presenting the same
        token can therefore never both proceed.
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE approvals SET status = 'consumed', consumed_at = ? "
                "WHERE approval_id = ? AND status = 'issued'",
                (consumed_at, approval_id),
            )
            self._conn.commit()
            return cursor.rowcount == 1

    def expire_approvals(self, now_iso: str) -> int:
        """Mark issued approvals whose expiry has passed as expired.

        Returns:
            Number of approvals expired.
        """
        with self._lock:
            cursor = self._conn.execute(
                "UPDATE approvals SET status = 'expired' "
                "WHERE status = 'issued' AND expires_at <= ?",
                (now_iso,),
            )
            self._conn.commit()
            return cursor.rowcount

    # -- simulations -------------------------------------------------------

    def save_simulation(
        self,
        plan_id: str,
        dsl_hash: str,
        can_promote: bool,
        payload: dict[str, object],
        created_at: str,
    ) -> None:
        self.execute(
            """
            INSERT INTO simulations (plan_id, dsl_hash, can_promote, payload, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(plan_id, dsl_hash) DO UPDATE SET
                can_promote = excluded.can_promote,
                payload = excluded.payload,
                created_at = excluded.created_at
            """,
            (plan_id, dsl_hash, int(can_promote), json.dumps(payload), created_at),
        )

    def get_simulation(self, plan_id: str, dsl_hash: str) -> dict[str, object] | None:
        row = self.fetch_one(
            "SELECT payload FROM simulations WHERE plan_id = ? AND dsl_hash = ?",
            (plan_id, dsl_hash),
        )
        if row is None:
            return None
        return json.loads(row["payload"])


def _row_to_entry(row: sqlite3.Row) -> AuditLogEntry:
    body = json.loads(row["payload"])
    return AuditLogEntry(
        chain_position=body["chainPosition"],
        entry_id=body["entryId"],
        event_type=body["eventType"],
        timestamp=body["timestamp"],
        result=body["result"],
        connection_id=body.get("connectionId"),
        action=body.get("action") or {},
        impact=body.get("impact") or {},
        details=body.get("details") or {},
        error=body.get("error"),
        prev_hash=row["prev_hash"],
        entry_hash=row["entry_hash"],
    )
