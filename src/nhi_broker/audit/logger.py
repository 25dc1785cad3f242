"""Audit logger: redacts, persists durably, then logs."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import replace

from ..errors import AuditWriteError
from ..utils.masking import redact_sensitive_fields, sanitize_log_value
from .db import SqliteAuditStore
from .models import AuditEvent, AuditRecord

logger = logging.getLogger(__name__)


def _clean(value: str | None) -> str | None:
    return sanitize_log_value(value) if value is not None else None


class AuditLogger:
    """Records one audit event per pipeline stage attempt.

    ``record`` returns only after the store has committed the row. The write
    runs in a worker thread so the fsync does not stall the event loop. A
    failed write raises ``AuditWriteError`` so the caller fails closed.
    """

    def __init__(self, store: SqliteAuditStore, mask_fields: Iterable[str] = ()) -> None:
        self._store = store
        self._extra_markers = frozenset(field.lower() for field in mask_fields)

    @property
    def store(self) -> SqliteAuditStore:
        return self._store

    async def record(self, event: AuditEvent) -> AuditRecord:
        redacted = redact_sensitive_fields(event.detail, extra_markers=self._extra_markers)
        safe_event = replace(
            event,
            actor=sanitize_log_value(event.actor),
            resource=_clean(event.resource),
            reason=_clean(event.reason),
            lease_id=_clean(event.lease_id),
            detail=redacted if isinstance(redacted, dict) else {},
        )

        try:
            record = await asyncio.to_thread(self._store.append, safe_event)
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.error(
                "Audit write failed for %s (%s): %s",
                safe_event.event_type,
                safe_event.outcome,
                exc,
            )
            raise AuditWriteError(f"Audit write failed: {exc}") from exc

        logger.info(
            "AUDIT seq=%d event=%s outcome=%s actor=%s resource=%s lease=%s reason=%s",
            record.seq,
            record.event_type,
            record.outcome,
            record.actor,
            record.resource or "-",
            record.lease_id or "-",
            record.reason or "-",
        )
        return record
