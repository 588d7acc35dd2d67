# tests/test_pg_store.py
"""
Tests for the PostgreSQL adapters with a mocked connection:
- AsyncPostgresBulkJobStore (pg_bulk_job_store_async.py)
- AsyncPostgresRecipientDirectory (pg_recipient_directory_async.py)
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from bulksend.core.bulk import (
    DeliveryChannel,
    DispatchAuditRecord,
    EntryState,
    JobStatus,
    MessageType,
    NotFoundError,
    TransientStoreError,
)
from bulksend.infra.pg_bulk_job_store_async import (
    AsyncPostgresBulkJobStore,
    _parse_uuid,
    _row_to_entry,
    _row_to_job,
)
from bulksend.infra.pg_recipient_directory_async import AsyncPostgresRecipientDirectory, event_locale

JOB_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
ENTRY_ID = "99999999-8888-7777-6666-555555555555"

STORE_CONN = "bulksend.infra.pg_bulk_job_store_async.safe_db_conn"
DIRECTORY_CONN = "bulksend.infra.pg_recipient_directory_async.safe_db_conn"


def _make_job_row(overrides: dict | None = None) -> dict:
    """Create a dict that mimics an asyncpg Record for _row_to_job."""
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.UUID(JOB_ID),
        "event_id": "evt-1",
        "created_by": "owner-1",
        "message_type": "INVITE",
        "status": "PENDING",
        "total_recipients": 3,
        "channel": "AUTO",
        "sent_count": 0,
        "failed_count": 0,
        "skipped_count": 0,
        "cancel_requested": False,
        "error_message": None,
        "retry_of": None,
        "created_at": now,
        "updated_at": now,
        "started_at": None,
        "completed_at": None,
    }
    if overrides:
        row.update(overrides)
    return row


def _make_entry_row(position: int = 0, overrides: dict | None = None) -> dict:
    row = {
        "id": uuid.uuid4(),
        "job_id": uuid.UUID(JOB_ID),
        "recipient_id": f"g{position}",
        "state": "CLAIMED",
        "position": position,
        "attempt_count": 0,
        "last_error": None,
        "retryable": None,
        "claimed_at": datetime.now(timezone.utc),
        "processed_at": None,
    }
    if overrides:
        row.update(overrides)
    return row


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

class TestRowMapping:
    def test_row_to_job(self):
        job = _row_to_job(_make_job_row({"status": "PROCESSING", "sent_count": 2}))
        assert job.id == JOB_ID
        assert job.status == JobStatus.PROCESSING
        assert job.message_type == MessageType.INVITE
        assert job.sent_count == 2
        assert job.retry_of is None
        assert job.channel == DeliveryChannel.AUTO

    def test_row_to_job_retry_of(self):
        parent = uuid.uuid4()
        job = _row_to_job(_make_job_row({"retry_of": parent}))
        assert job.retry_of == str(parent)

    def test_row_to_entry(self):
        entry = _row_to_entry(_make_entry_row(4, {"state": "FAILED", "retryable": True}))
        assert entry.job_id == JOB_ID
        assert entry.state == EntryState.FAILED
        assert entry.position == 4
        assert entry.retryable is True

    def test_parse_uuid(self):
        assert _parse_uuid(JOB_ID) == uuid.UUID(JOB_ID)
        assert _parse_uuid("not-a-uuid") is None


# ---------------------------------------------------------------------------
# Job store
# ---------------------------------------------------------------------------

class TestAsyncPostgresBulkJobStore:
    @pytest.mark.asyncio
    async def test_create_job_inserts_job_and_entries(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_make_job_row())
        mock_conn.execute = AsyncMock(return_value="INSERT 0 3")

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            job = await store.create_job(
                event_id="evt-1",
                created_by="owner-1",
                message_type=MessageType.INVITE,
                recipient_ids=["g1", "g2", "g1", "g3"],
                channel=DeliveryChannel.SMS,
            )

        assert job.id == JOB_ID
        mock_ctx.assert_called_once_with(autocommit=False)
        assert mock_conn.fetchrow.call_args[0][4] == 3
        assert mock_conn.fetchrow.call_args[0][5] == "SMS"
        insert_sql, _, recipient_ids = mock_conn.execute.call_args[0]
        assert "WITH ORDINALITY" in insert_sql
        assert recipient_ids == ["g1", "g2", "g3"]

    @pytest.mark.asyncio
    async def test_create_job_not_retried_on_transient_error(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(side_effect=ConnectionResetError("connection reset"))

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(TransientStoreError):
                await store.create_job(
                    event_id="evt-1",
                    created_by="owner-1",
                    message_type=MessageType.INVITE,
                    recipient_ids=["g1"],
                )

        assert mock_conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_get_job_invalid_id_skips_database(self):
        store = AsyncPostgresBulkJobStore()

        with patch(STORE_CONN) as mock_ctx:
            assert await store.get_job("not-a-uuid") is None

        mock_ctx.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_job(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_make_job_row())

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            job = await store.get_job(JOB_ID)

        assert job.id == JOB_ID
        assert mock_conn.fetchrow.call_args[0][1] == uuid.UUID(JOB_ID)

    @pytest.mark.asyncio
    async def test_claim_batch_uses_skip_locked_and_lease(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_make_entry_row(1), _make_entry_row(0)])
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            entries = await store.claim_batch(JOB_ID, 10, 300)

        assert [e.position for e in entries] == [0, 1]
        sql, job_uuid, max_size, lease = mock_conn.fetch.call_args[0]
        assert "FOR UPDATE SKIP LOCKED" in sql
        assert "NOT cancel_requested" in sql
        assert "make_interval" in sql
        assert (job_uuid, max_size, lease) == (uuid.UUID(JOB_ID), 10, 300.0)
        # Job moved to PROCESSING in the same transaction
        assert "PROCESSING" in mock_conn.execute.call_args[0][0]
        mock_ctx.assert_called_once_with(autocommit=False)

    @pytest.mark.asyncio
    async def test_claim_batch_empty_leaves_job_alone(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[])

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            assert await store.claim_batch(JOB_ID, 10, 300) == []

        mock_conn.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_finalize_entry_applied(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={"id": uuid.UUID(JOB_ID)})

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            applied = await store.finalize_entry(ENTRY_ID, EntryState.FAILED, error="x" * 3000, retryable=True)

        assert applied is True
        sql, entry_uuid, state, error, retryable = mock_conn.fetchrow.call_args[0]
        assert "state = 'CLAIMED'" in sql
        assert "failed_count = j.failed_count +" in sql
        assert entry_uuid == uuid.UUID(ENTRY_ID)
        assert state == "FAILED"
        assert len(error) == 2000
        assert retryable is True

    @pytest.mark.asyncio
    async def test_finalize_entry_already_final(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            assert await store.finalize_entry(ENTRY_ID, EntryState.SENT) is False

    @pytest.mark.asyncio
    async def test_finalize_entry_rejects_non_terminal_state(self):
        store = AsyncPostgresBulkJobStore()
        with pytest.raises(ValueError):
            await store.finalize_entry(ENTRY_ID, EntryState.CLAIMED)

    @pytest.mark.asyncio
    async def test_finalize_job_transition(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=_make_job_row({"status": "COMPLETED"}))

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            job, transitioned = await store.finalize_job(JOB_ID)

        assert transitioned is True
        assert job.status == JobStatus.COMPLETED
        sql = mock_conn.fetchrow.call_args[0][0]
        assert "CANCELLED" in sql
        assert "NOT EXISTS" in sql

    @pytest.mark.asyncio
    async def test_finalize_job_still_running(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(side_effect=[None, _make_job_row({"status": "PROCESSING"})])

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            job, transitioned = await store.finalize_job(JOB_ID)

        assert transitioned is False
        assert job.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_finalize_job_unknown(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value=None)

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            with pytest.raises(NotFoundError):
                await store.finalize_job(JOB_ID)

    @pytest.mark.asyncio
    async def test_request_cancel_on_finished_job_returns_current_row(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(side_effect=[None, _make_job_row({"status": "COMPLETED"})])

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            job = await store.request_cancel(JOB_ID)

        assert job.status == JobStatus.COMPLETED
        assert job.cancel_requested is False

    @pytest.mark.asyncio
    async def test_mark_failed_truncates_error(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="UPDATE 1")

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await store.mark_failed(JOB_ID, "e" * 5000)

        sql, _, error = mock_conn.execute.call_args[0]
        assert "'FAILED'" in sql
        assert "status IN ('PENDING', 'PROCESSING')" in sql
        assert len(error) == 2000

    @pytest.mark.asyncio
    async def test_list_entries_filters_by_state_without_limit(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[_make_entry_row(0, {"state": "FAILED"})])

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            entries = await store.list_entries(JOB_ID, EntryState.FAILED, limit=None)

        assert [e.state for e in entries] == [EntryState.FAILED]
        sql, job_uuid, state = mock_conn.fetch.call_args[0]
        assert "state = $2" in sql
        assert "LIMIT" not in sql
        assert state == "FAILED"

    @pytest.mark.asyncio
    async def test_count_entries_by_state_fills_missing(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[
            {"state": "SENT", "cnt": 7},
            {"state": "PENDING", "cnt": 3},
        ])

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            counts = await store.count_entries_by_state(JOB_ID)

        assert counts[EntryState.SENT] == 7
        assert counts[EntryState.PENDING] == 3
        assert counts[EntryState.FAILED] == 0

    @pytest.mark.asyncio
    async def test_append_audit(self):
        store = AsyncPostgresBulkJobStore()
        mock_conn = AsyncMock()
        mock_conn.execute = AsyncMock(return_value="INSERT 0 1")
        record = DispatchAuditRecord(
            job_id=JOB_ID,
            entry_id=ENTRY_ID,
            recipient_id="g1",
            message_type=MessageType.INVITE,
            channel="twilio",
            outcome=EntryState.SENT,
            provider_message_id="SM123",
        )

        with patch(STORE_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await store.append_audit(record)

        args = mock_conn.execute.call_args[0]
        assert "bulk_dispatch_audit" in args[0]
        assert args[3:7] == ("g1", "INVITE", "twilio", "SENT")


# ---------------------------------------------------------------------------
# Recipient directory
# ---------------------------------------------------------------------------

class TestAsyncPostgresRecipientDirectory:
    def test_event_locale(self):
        assert event_locale(None) == "he"
        assert event_locale("Garden party. locale:EN") == "en"
        assert event_locale("no marker") == "he"

    @pytest.mark.asyncio
    async def test_get_event(self):
        directory = AsyncPostgresRecipientDirectory()
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={
            "id": "evt-1",
            "owner_id": "owner-1",
            "title": "Wedding",
            "starts_at": None,
            "location": None,
            "venue": "Hall A",
            "notes": "locale:en",
        })

        with patch(DIRECTORY_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            event = await directory.get_event("evt-1")

        assert event.owner_id == "owner-1"
        assert event.location == ""
        assert event.locale == "en"

    @pytest.mark.asyncio
    async def test_reminder_eligibility_filters_on_rsvp(self):
        directory = AsyncPostgresRecipientDirectory()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[{"id": "g1"}, {"id": "g2"}])

        with patch(DIRECTORY_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            ids = await directory.list_eligible_recipient_ids("evt-1", MessageType.REMINDER)

        assert ids == ["g1", "g2"]
        assert "rsvp_status" in mock_conn.fetch.call_args[0][0]

    @pytest.mark.asyncio
    async def test_invite_eligibility_uses_audit_trail(self):
        directory = AsyncPostgresRecipientDirectory()
        mock_conn = AsyncMock()
        mock_conn.fetch = AsyncMock(return_value=[])

        with patch(DIRECTORY_CONN) as mock_ctx:
            mock_ctx.return_value.__aenter__ = AsyncMock(return_value=mock_conn)
            mock_ctx.return_value.__aexit__ = AsyncMock(return_value=False)

            await directory.list_eligible_recipient_ids("evt-1", MessageType.INVITE)

        sql = mock_conn.fetch.call_args[0][0]
        assert "NOT" in sql
        assert "bulk_dispatch_audit" in sql

    @pytest.mark.asyncio
    async def test_get_recipients_empty_skips_database(self):
        directory = AsyncPostgresRecipientDirectory()

        with patch(DIRECTORY_CONN) as mock_ctx:
            assert await directory.get_recipients([]) == {}

        mock_ctx.assert_not_called()
