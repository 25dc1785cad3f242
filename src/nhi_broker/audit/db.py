"""Append-only SQLite store for audit records."""

from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Mapping, Sequence

from nhi_broker.audit.models import AuditEvent, AuditRecord
from nhi_broker.utils.time import utc_now_iso

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]

_MAX_PAGE_SIZE = 1000


class SqliteAuditStore:
    """Durable, append-only audit stream.

    Rows cannot be updated or deleted: triggers abort any such statement.
    Every append is committed with ``synchronous=FULL`` before returning.
    """

    def __init__(self, path: str, wal: bool = True) -> None:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS audit_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                event_id TEXT NOT NULL UNIQUE,
                recorded_at TEXT NOT NULL,
                event_type TEXT NOT NULL,
                actor TEXT NOT NULL,
                resource TEXT,
                outcome TEXT NOT NULL,
                reason TEXT,
                lease_id TEXT,
                detail TEXT NOT NULL
            );

            CREATE TRIGGER IF NOT EXISTS audit_records_no_update
            BEFORE UPDATE ON audit_records
            BEGIN
                SELECT RAISE(ABORT, 'audit_records is append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS audit_records_no_delete
            BEFORE DELETE ON audit_records
            BEGIN
                SELECT RAISE(ABORT, 'audit_records is append-only');
            END;

            CREATE INDEX IF NOT EXISTS idx_audit_records_lease_id ON audit_records(lease_id);
            CREATE INDEX IF NOT EXISTS idx_audit_records_event_type ON audit_records(event_type);
            CREATE INDEX IF NOT EXISTS idx_audit_records_actor ON audit_records(actor);
            """
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def append(self, event: AuditEvent) -> AuditRecord:
        """Append one event and return it with its assigned sequence number."""
        event_id = uuid.uuid4().hex
        detail_json = json.dumps(event.detail, sort_keys=True, default=str)
        with self._lock:
            recorded_at = utc_now_iso()
            try:
                cursor = self._conn.execute(
                    """
                    INSERT INTO audit_records (
                        event_id, recorded_at, event_type, actor, resource,
                        outcome, reason, lease_id, detail
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        recorded_at,
                        event.event_type,
                        event.actor,
                        event.resource,
                        event.outcome,
                        event.reason,
                        event.lease_id,
                        detail_json,
                    ),
                )
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
            seq = cursor.lastrowid

        return AuditRecord(
            seq=int(seq),
            event_id=event_id,
            recorded_at=recorded_at,
            event_type=event.event_type,
            actor=event.actor,
            resource=event.resource,
            outcome=event.outcome,
            reason=event.reason,
            lease_id=event.lease_id,
            detail=json.loads(detail_json),
        )

    def get(self, seq: int) -> AuditRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM audit_records WHERE seq = ?", (seq,)
            ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_records(
        self,
        *,
        after_seq: int = 0,
        limit: int = 100,
        event_type: str | None = None,
        lease_id: str | None = None,
        actor: str | None = None,
    ) -> list[AuditRecord]:
        """Read records in sequence order, for the reporting collaborator."""
        where, params = _filters(after_seq, event_type, lease_id, actor)
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        with self._lock:
            rows = self._conn.execute(
                f"SELECT * FROM audit_records WHERE {where} ORDER BY seq ASC LIMIT ?",
                [*params, limit],
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def count(
        self,
        *,
        event_type: str | None = None,
        lease_id: str | None = None,
        actor: str | None = None,
        outcome: str | None = None,
    ) -> int:
        where, params = _filters(0, event_type, lease_id, actor)
        if outcome is not None:
            where += " AND outcome = ?"
            params.append(outcome)
        with self._lock:
            row = self._conn.execute(
                f"SELECT COUNT(*) AS n FROM audit_records WHERE {where}", params
            ).fetchone()
        return int(row["n"])


def _filters(
    after_seq: int,
    event_type: str | None,
    lease_id: str | None,
    actor: str | None,
) -> tuple[str, list[Any]]:
    clauses = ["seq > ?"]
    params: list[Any] = [after_seq]
    if event_type is not None:
        clauses.append("event_type = ?")
        params.append(event_type)
    if lease_id is not None:
        clauses.append("lease_id = ?")
        params.append(lease_id)
    if actor is not None:
        clauses.append("actor = ?")
        params.append(actor)
    return " AND ".join(clauses), params


def _row_to_record(row: sqlite3.Row) -> AuditRecord:
    data = dict(row)
    data["detail"] = json.loads(data["detail"]) if data["detail"] else {}
    return AuditRecord(**data)
