"""Tests for job type definitions."""

from genqueue.jobs.types import (
    ACTIVE_STATUSES,
    WAITING_STATUSES,
    JobKind,
    JobStatus,
    RejectionReason,
)


class TestJobStatus:
    def test_terminal_statuses(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert JobStatus.CANCELLED.is_terminal
        assert not JobStatus.QUEUED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.PROCESSING.is_terminal

    def test_pending_is_waiting_like_queued(self):
        assert JobStatus.PENDING.is_waiting
        assert JobStatus.QUEUED.is_waiting
        assert not JobStatus.PROCESSING.is_waiting

    def test_active_is_waiting_plus_processing(self):
        assert set(ACTIVE_STATUSES) == set(WAITING_STATUSES) | {JobStatus.PROCESSING}

    def test_string_values(self):
        assert JobStatus("queued") is JobStatus.QUEUED
        assert JobStatus.PROCESSING.value == "processing"


class TestJobKind:
    def test_kinds(self):
        assert {k.value for k in JobKind} == {"image", "video", "audio"}


class TestRejectionReason:
    def test_stable_reason_strings(self):
        assert RejectionReason.INVALID_REQUEST.value == "invalid-request"
        assert RejectionReason.QUEUE_LIMIT_EXCEEDED.value == "queue-limit-exceeded"
        assert RejectionReason.INSUFFICIENT_TOKENS.value == "insufficient-tokens"
