"""Tests for AuditLogger."""

from __future__ import annotations

import logging
import sqlite3
import threading
from unittest.mock import MagicMock

import pytest

from nhi_broker.audit.logger import AuditLogger
from nhi_broker.audit.models import ASSERTION_VALIDATE, CREDENTIAL_ISSUE, AuditEvent
from nhi_broker.errors import AuditWriteError, InternalFaultError


@pytest.mark.asyncio
async def test_record_redacts_sensitive_detail(audit_store) -> None:
    audit = AuditLogger(audit_store, mask_fields=["subject"])

    record = await audit.record(
        AuditEvent(
            event_type=CREDENTIAL_ISSUE,
            outcome="success",
            actor="ci-deployer",
            detail={
                "provider": "aws-sts",
                "material": {"secret_access_key": "abc"},
                "session_token": "xyz",
                "nested": {"password": "hunter2", "note": "ok"},
                "subject": "repo:acme/deploy",
            },
        )
    )

    assert record.detail["provider"] == "aws-sts"
    assert record.detail["material"] == "***"
    assert record.detail["session_token"] == "***"
    assert record.detail["nested"] == {"password": "***", "note": "ok"}
    assert record.detail["subject"] == "***"
    assert audit_store.get(record.seq).detail == record.detail


@pytest.mark.asyncio
async def test_record_strips_control_characters(audit_store) -> None:
    audit = AuditLogger(audit_store)

    record = await audit.record(
        AuditEvent(
            event_type=ASSERTION_VALIDATE,
            outcome="denied",
            resource="profile\nINJECTED",
            reason="untrusted_issuer",
        )
    )

    assert "\n" not in record.resource
    assert record.actor == "unknown"


@pytest.mark.asyncio
async def test_record_logs_audit_line(audit_store, caplog: pytest.LogCaptureFixture) -> None:
    audit = AuditLogger(audit_store)

    with caplog.at_level(logging.INFO, logger="nhi_broker.audit.logger"):
        record = await audit.record(
            AuditEvent(event_type=ASSERTION_VALIDATE, outcome="success", detail={"token": "t"})
        )

    assert f"AUDIT seq={record.seq} event=assertion.validate outcome=success" in caplog.text
    assert "token" not in caplog.text


@pytest.mark.asyncio
async def test_store_failure_raises_audit_write_error() -> None:
    store = MagicMock()
    store.append.side_effect = sqlite3.OperationalError("database is locked")
    audit = AuditLogger(store)

    with pytest.raises(AuditWriteError) as exc_info:
        await audit.record(AuditEvent(event_type=ASSERTION_VALIDATE, outcome="success"))

    assert isinstance(exc_info.value, InternalFaultError)
    assert exc_info.value.to_public()["error"] == "internal_fault"


@pytest.mark.asyncio
async def test_append_runs_off_the_event_loop_thread(audit_store) -> None:
    loop_thread = threading.get_ident()
    seen: list[int] = []
    original = audit_store.append

    def append(event):
        seen.append(threading.get_ident())
        return original(event)

    audit_store.append = append
    record = await AuditLogger(audit_store).record(
        AuditEvent(event_type=ASSERTION_VALIDATE, outcome="success")
    )

    assert seen and seen[0] != loop_thread
    assert audit_store.get(record.seq) is not None
