"""
Tests for CommandGateway: tagged requests in, tagged responses out.

Each command runs in its own transaction; domain errors come back as
CommandRejected and leave nothing behind.
"""

import pytest
from sqlalchemy import func, select

from conftest import ADMIN, BUYER, bank_proof
from presale_kernel.db.engine import session_scope
from presale_kernel.domain.commands import (
    ApproveInvoice,
    BulkApplied,
    BulkCancel,
    BulkRetry,
    CancelInvoice,
    CancelUnpaidInvoice,
    ClaimNext,
    CommandRejected,
    CompleteJob,
    EnqueueNotification,
    ExpireInvoice,
    FailJob,
    GetInvoiceStatus,
    GetQueueSnapshot,
    InvoiceStatusView,
    InvoiceTransitioned,
    JobClaimed,
    JobEnqueued,
    JobResolved,
    ManualRetry,
    RejectInvoice,
    SubmitProof,
)
from presale_kernel.domain.delivery import ClaimStatus, JobStatus, QueueSnapshot
from presale_kernel.domain.invoice import InvoiceStatus, TransitionStatus
from presale_kernel.models.audit_entry import AuditEntry
from presale_kernel.models.notification_job import NotificationJob
from presale_kernel.services.command_gateway import CommandGateway


@pytest.fixture
def gateway(session_factory, presale_config, clock):
    return CommandGateway(session_factory, presale_config, clock)


def count(session_factory, model) -> int:
    with session_scope(session_factory) as sess:
        return sess.execute(select(func.count()).select_from(model)).scalar_one()


def enqueue_command(source_id: str = "INV100") -> EnqueueNotification:
    return EnqueueNotification(
        recipient=BUYER,
        template_id="invoice_approved",
        variables={"invoice_no": source_id},
        source_type="Invoice",
        source_id=source_id,
    )


class TestInvoiceCommands:

    def test_submit_and_approve(self, gateway, committed_invoice):
        committed_invoice("INV100")

        submitted = gateway.execute(SubmitProof("INV100", bank_proof(), actor=BUYER))
        approved = gateway.execute(ApproveInvoice("INV100", actor=ADMIN, note="ok"))
        repeated = gateway.execute(ApproveInvoice("INV100", actor=ADMIN))

        assert isinstance(submitted, InvoiceTransitioned)
        assert submitted.invoice_status == InvoiceStatus.PENDING_REVIEW
        assert submitted.job_id is not None
        assert approved.status == TransitionStatus.TRANSITIONED
        assert repeated.status == TransitionStatus.ALREADY_PROCESSED
        assert repeated.job_id is None
        assert gateway.execute(GetInvoiceStatus("INV100")) == InvoiceStatusView(
            "INV100", InvoiceStatus.PAID
        )

    def test_rejected_command_rolls_back(self, gateway, committed_invoice, session_factory):
        committed_invoice("INV100", submit=True)
        gateway.execute(ApproveInvoice("INV100", actor=ADMIN))
        audit_before = count(session_factory, AuditEntry)
        jobs_before = count(session_factory, NotificationJob)

        response = gateway.execute(SubmitProof("INV100", bank_proof(), actor=BUYER))

        assert isinstance(response, CommandRejected)
        assert response.code == "INVALID_STATE_TRANSITION"
        assert count(session_factory, AuditEntry) == audit_before
        assert count(session_factory, NotificationJob) == jobs_before

    def test_reject_expire_cancel(self, gateway, committed_invoice):
        committed_invoice("INV1", submit=True)
        committed_invoice("INV2")
        committed_invoice("INV3")

        assert gateway.execute(RejectInvoice("INV1", actor=ADMIN, note="blurry")).invoice_status == (
            InvoiceStatus.REJECTED
        )
        assert gateway.execute(ExpireInvoice("INV2")).invoice_status == InvoiceStatus.EXPIRED
        assert gateway.execute(CancelInvoice("INV3", actor=ADMIN)).invoice_status == (
            InvoiceStatus.CANCELLED
        )

    def test_unknown_invoice(self, gateway):
        response = gateway.execute(GetInvoiceStatus("INV404"))
        assert response == CommandRejected(
            code="INVOICE_NOT_FOUND", message="Invoice not found: INV404"
        )

    def test_wrong_buyer(self, gateway, committed_invoice):
        committed_invoice("INV100")
        response = gateway.execute(SubmitProof("INV100", bank_proof(), actor="mallory@example.com"))
        assert response.code == "INVOICE_OWNERSHIP"

    def test_buyer_cancel(self, gateway, committed_invoice):
        committed_invoice("INV100")
        committed_invoice("INV200")
        gateway.execute(SubmitProof("INV200", bank_proof(), actor=BUYER))

        other = gateway.execute(CancelUnpaidInvoice("INV100", actor="mallory@example.com"))
        assert other.code == "INVOICE_OWNERSHIP"
        assert gateway.execute(CancelUnpaidInvoice("INV200", actor=BUYER)).code == (
            "INVALID_STATE_TRANSITION"
        )

        cancelled = gateway.execute(CancelUnpaidInvoice("INV100", actor=BUYER))
        assert cancelled.invoice_status == InvoiceStatus.CANCELLED


class TestQueueCommands:

    def test_worker_cycle(self, gateway):
        enqueued = gateway.execute(enqueue_command())
        assert isinstance(enqueued, JobEnqueued)
        assert enqueued.status == JobStatus.PENDING

        claimed = gateway.execute(ClaimNext("worker-1"))
        assert isinstance(claimed, JobClaimed)
        assert claimed.status == ClaimStatus.CLAIMED
        assert claimed.job.job_id == enqueued.job_id

        assert gateway.execute(ClaimNext("worker-2")).status == ClaimStatus.UNAVAILABLE
        assert gateway.execute(ClaimNext("worker-2", lease_seconds=0)).code == "INVALID_LEASE"

        completed = gateway.execute(CompleteJob(enqueued.job_id, "worker-1"))
        assert completed == JobResolved(enqueued.job_id, "sent", JobStatus.SENT)

    def test_fail_and_manual_retry(self, gateway):
        job_id = gateway.execute(enqueue_command()).job_id

        failed = gateway.execute(FailJob(job_id, "bounced", permanent=True))
        assert failed.outcome == "exhausted"
        assert failed.job_status == JobStatus.FAILED
        assert failed.attempt_count == 1

        retried = gateway.execute(ManualRetry(job_id, actor=ADMIN))
        assert retried == JobResolved(job_id, "retried", JobStatus.PENDING, attempt_count=0)

        assert gateway.execute(ManualRetry(job_id, actor=ADMIN)).code == "INVALID_JOB_TRANSITION"

    def test_bulk_operations(self, gateway):
        first = gateway.execute(enqueue_command("INV1")).job_id
        second = gateway.execute(enqueue_command("INV2")).job_id
        gateway.execute(FailJob(first, "bounced", permanent=True))

        assert gateway.execute(BulkRetry((first, second), actor=ADMIN)) == BulkApplied(2, 1)
        assert gateway.execute(BulkCancel((first, second, "junk"), actor=ADMIN)) == BulkApplied(3, 2)

    def test_unknown_template(self, gateway):
        response = gateway.execute(
            EnqueueNotification(recipient=BUYER, template_id="nope", variables={})
        )
        assert response.code == "UNKNOWN_TEMPLATE"

    def test_queue_snapshot(self, gateway):
        gateway.execute(enqueue_command("INV1"))
        gateway.execute(enqueue_command("INV2"))
        gateway.execute(ClaimNext("worker-1"))

        snapshot = gateway.execute(GetQueueSnapshot())

        assert isinstance(snapshot, QueueSnapshot)
        assert snapshot.counts["PENDING"] == 2
        assert snapshot.total == 2
        assert snapshot.in_flight == 1
        assert snapshot.stuck == 0


def test_unsupported_command(gateway):
    with pytest.raises(TypeError):
        gateway.execute(object())


def test_rejection_logged(gateway, captured_logs):
    gateway.execute(ApproveInvoice("INV404", actor=ADMIN))
    rejected = [r for r in captured_logs() if r["message"] == "command_rejected"]
    assert rejected[0]["code"] == "INVOICE_NOT_FOUND"
    assert rejected[0]["command"] == "ApproveInvoice"
    assert rejected[0]["actor"] == ADMIN
