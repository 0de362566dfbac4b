"""Tests for the read-only selectors: invoice status, queue snapshot, audit trace."""

from datetime import timedelta

import pytest

from conftest import ADMIN, BUYER, bank_proof
from presale_kernel.domain.delivery import EnqueueRequest, JobHealth, JobStatus
from presale_kernel.domain.invoice import InvoiceStatus
from presale_kernel.exceptions import InvoiceNotFoundError, JobNotFoundError
from presale_kernel.selectors import AuditSelector, InvoiceSelector, QueueSelector


def enqueue(queue, source_id="INV1"):
    return queue.enqueue(
        EnqueueRequest(
            recipient=BUYER,
            template_id="invoice_approved",
            variables={"invoice_no": source_id},
            source_type="Invoice",
            source_id=source_id,
        ),
        actor="system",
    )


class TestInvoiceSelector:

    def test_get_and_status(self, session, clock, make_invoice, payments):
        make_invoice("INV100")
        payments.submit_proof("INV100", bank_proof(), actor=BUYER)
        selector = InvoiceSelector(session, clock)

        view = selector.get("INV100")

        assert view.invoice_no == "INV100"
        assert view.status == InvoiceStatus.PENDING_REVIEW
        assert selector.get_status("INV100") == InvoiceStatus.PENDING_REVIEW

    def test_unknown_invoice(self, session, clock):
        selector = InvoiceSelector(session, clock)
        assert selector.get("INV404") is None
        with pytest.raises(InvoiceNotFoundError):
            selector.get_status("INV404")

    def test_list_by_status(self, session, clock, make_invoice, payments):
        make_invoice("INV1")
        make_invoice("INV2")
        make_invoice("INV3")
        payments.submit_proof("INV2", bank_proof(), actor=BUYER)

        selector = InvoiceSelector(session, clock)

        assert sorted(v.invoice_no for v in selector.list_by_status(InvoiceStatus.UNPAID)) == [
            "INV1",
            "INV3",
        ]
        assert [v.invoice_no for v in selector.list_by_status(InvoiceStatus.PENDING_REVIEW)] == [
            "INV2"
        ]
        assert selector.list_by_status(InvoiceStatus.PAID) == []


class TestQueueSelector:

    def test_counts_include_every_status(self, session, clock):
        counts = QueueSelector(session, clock).counts_by_status()
        assert counts == {status.value: 0 for status in JobStatus}

    def test_counts_by_status(self, session, clock, queue):
        first = enqueue(queue, "INV1")
        enqueue(queue, "INV2")
        queue.cancel_job(first.id, actor=ADMIN)

        counts = QueueSelector(session, clock).counts_by_status()

        assert counts["PENDING"] == 1
        assert counts["CANCELLED"] == 1
        assert counts["SENT"] == 0

    def test_snapshot_in_flight_and_stuck(self, session, clock, queue, delivery_config):
        enqueue(queue, "INV1")
        enqueue(queue, "INV2")
        enqueue(queue, "INV3")
        queue.claim_next("worker-2", lease_seconds=300)
        queue.claim_next("worker-1", lease_seconds=30)
        clock.advance(60)

        snapshot = QueueSelector(session, clock).snapshot()

        assert snapshot.in_flight == 1
        assert snapshot.stuck == 1
        assert snapshot.total == 3
        assert snapshot.taken_at == clock.now()

    def test_sent_jobs_are_not_in_flight(self, session, clock, queue):
        job = enqueue(queue)
        queue.claim_next("worker-1")
        queue.complete(job.id, "worker-1")

        snapshot = QueueSelector(session, clock).snapshot()

        assert snapshot.in_flight == 0
        assert snapshot.counts["SENT"] == 1

    def test_job_health(self, session, clock, queue):
        job = enqueue(queue)
        selector = QueueSelector(session, clock)
        assert selector.job_health(job.id) == JobHealth.HEALTHY

        queue.claim_next("worker-1", lease_seconds=30)
        assert selector.job_health(job.id) == JobHealth.IN_FLIGHT

        clock.advance(31)
        assert selector.job_health(job.id) == JobHealth.STUCK

    def test_get_job(self, session, clock, queue):
        job = enqueue(queue)
        view = QueueSelector(session, clock).get_job(str(job.id))
        assert view.job_id == str(job.id)
        assert view.status == JobStatus.PENDING
        assert view.next_attempt_at == clock.now()

    @pytest.mark.parametrize("job_id", ["not-a-uuid", "00000000-0000-0000-0000-000000000000"])
    def test_get_job_not_found(self, session, clock, job_id):
        with pytest.raises(JobNotFoundError):
            QueueSelector(session, clock).get_job(job_id)

    def test_jobs_for_source(self, session, clock, queue):
        enqueue(queue, "INV1")
        clock.advance(1)
        enqueue(queue, "INV1")
        enqueue(queue, "INV2")

        jobs = QueueSelector(session, clock).jobs_for_source("Invoice", "INV1")

        assert len(jobs) == 2
        assert jobs[0].next_attempt_at < jobs[1].next_attempt_at


class TestAuditSelector:

    def test_trace_in_order(self, session, clock, make_invoice, payments):
        make_invoice("INV100")
        payments.submit_proof("INV100", bank_proof(), actor=BUYER)
        clock.advance(timedelta(minutes=5).total_seconds())
        payments.approve("INV100", note="ok", actor=ADMIN)

        trace = AuditSelector(session, clock).trace("Invoice", "INV100")

        assert trace.actions == ["INVOICE_CREATED", "PROOF_SUBMITTED", "INVOICE_APPROVED"]
        assert len(trace) == 3
        assert trace.entries[-1].actor == ADMIN
        assert trace.entries[-1].before["status"] == "PENDING_REVIEW"
        assert trace.entries[-1].after["status"] == "PAID"
        assert [e.seq for e in trace.entries] == sorted(e.seq for e in trace.entries)

    def test_latest_seq(self, session, clock, make_invoice):
        selector = AuditSelector(session, clock)
        assert selector.latest_seq() == 0

        make_invoice("INV100")

        assert selector.latest_seq() == 1
