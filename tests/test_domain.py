# tests/test_domain.py
"""Tests for bulk job domain models and typed errors."""
import pytest

from bulksend.core.bulk import (
    AuthorizationError,
    BulkJob,
    BulkJobError,
    ChunkResult,
    DispatchOutcome,
    EntryState,
    JobStatus,
    MessageType,
    NotFoundError,
    ProcessorFatalError,
    TransientStoreError,
    ValidationError,
)
from bulksend.core.bulk.domain import can_transition_entry, can_transition_job


def _job(**kwargs) -> BulkJob:
    defaults = dict(
        id="j1", event_id="e1", created_by="u1",
        message_type=MessageType.INVITE, status=JobStatus.PROCESSING, total_recipients=10,
    )
    defaults.update(kwargs)
    return BulkJob(**defaults)


class TestJobStateMachine:
    @pytest.mark.parametrize("terminal", [JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED])
    def test_terminal_statuses_never_move(self, terminal):
        assert terminal.is_terminal
        for target in JobStatus:
            assert can_transition_job(terminal, target) is False

    def test_forward_transitions(self):
        assert can_transition_job(JobStatus.PENDING, JobStatus.PROCESSING)
        assert can_transition_job(JobStatus.PENDING, JobStatus.CANCELLED)
        assert can_transition_job(JobStatus.PROCESSING, JobStatus.COMPLETED)
        assert not can_transition_job(JobStatus.PROCESSING, JobStatus.PENDING)


class TestEntryStateMachine:
    def test_claim_then_finish(self):
        assert can_transition_entry(EntryState.PENDING, EntryState.CLAIMED)
        for final in (EntryState.SENT, EntryState.FAILED, EntryState.SKIPPED):
            assert can_transition_entry(EntryState.CLAIMED, final)
            assert final.is_terminal

    def test_pending_cannot_skip_claim_to_sent(self):
        assert not can_transition_entry(EntryState.PENDING, EntryState.SENT)
        assert not can_transition_entry(EntryState.PENDING, EntryState.FAILED)

    def test_expired_claim_can_be_reclaimed(self):
        assert can_transition_entry(EntryState.CLAIMED, EntryState.CLAIMED)

    @pytest.mark.parametrize("final", [EntryState.SENT, EntryState.FAILED, EntryState.SKIPPED])
    def test_terminal_entries_never_move(self, final):
        assert all(not can_transition_entry(final, target) for target in EntryState)


class TestBulkJob:
    def test_counters_consistent(self):
        assert _job(sent_count=5, failed_count=3, skipped_count=2).counters_consistent()
        assert not _job(sent_count=8, failed_count=3).counters_consistent()
        assert not _job(sent_count=-1).counters_consistent()

    def test_processed_count(self):
        assert _job(sent_count=1, failed_count=2, skipped_count=3).processed_count == 6

    def test_is_terminal(self):
        assert _job(status=JobStatus.CANCELLED).is_terminal
        assert not _job(status=JobStatus.PENDING).is_terminal


class TestChunkResult:
    def test_add_tallies_by_state(self):
        result = ChunkResult()
        for state in (EntryState.SENT, EntryState.SENT, EntryState.FAILED, EntryState.SKIPPED):
            result.add(DispatchOutcome(entry_id="x", recipient_id="r", state=state))

        assert (result.processed, result.sent, result.failed, result.skipped) == (4, 2, 1, 1)
        assert result.is_complete is False


class TestMessageType:
    def test_parse_case_insensitive(self):
        assert MessageType.parse("thank_you") == MessageType.THANK_YOU

    def test_parse_invalid(self):
        with pytest.raises(ValidationError):
            MessageType.parse("PROMO")


class TestErrors:
    @pytest.mark.parametrize("error_cls,status", [
        (ValidationError, 400),
        (AuthorizationError, 403),
        (NotFoundError, 404),
        (TransientStoreError, 503),
        (ProcessorFatalError, 500),
    ])
    def test_status_codes(self, error_cls, status):
        exc = error_cls("x")
        assert isinstance(exc, BulkJobError)
        assert exc.status_code == status
        assert exc.detail == "x"

    def test_transient_default_detail(self):
        assert TransientStoreError().detail == "Chunk failed to process, try again"
