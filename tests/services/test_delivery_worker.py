"""
Tests for DeliveryWorker and DeliveryWorkerPool with the in-memory sender.

Covers:
- One job per run_once: claim, render, send, resolve
- Transient, permanent and unexpected sender failures
- drain() and the background thread pool
- End to end: an approval reaches the buyer's inbox
"""

import dataclasses
import time

import pytest

from conftest import ADMIN, BUYER, bank_proof
from presale_kernel.db.engine import session_scope
from presale_kernel.domain.delivery import EnqueueRequest, JobStatus
from presale_kernel.domain.templates import MessageTemplate, TemplateRegistry
from presale_kernel.exceptions import DeliveryError, PermanentDeliveryError
from presale_kernel.selectors.queue_selector import QueueSelector
from presale_kernel.services.delivery_worker import (
    DeliveryOutcome,
    DeliveryWorker,
    DeliveryWorkerPool,
)
from presale_kernel.services.notification_queue import NotificationQueue
from presale_kernel.services.payment_confirmation import PaymentConfirmationService
from presale_kernel.services.senders import RecordingSender


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def enqueue(session_factory, delivery_config, clock):
    """Enqueue and commit a job; returns its id."""

    def _enqueue(invoice_no: str = "INV100", template_id: str = "invoice_approved") -> str:
        with session_scope(session_factory) as sess:
            job = NotificationQueue(sess, delivery_config, clock).enqueue(
                EnqueueRequest(
                    recipient=BUYER,
                    template_id=template_id,
                    variables={"name": "buyer", "invoice_no": invoice_no},
                    source_type="Invoice",
                    source_id=invoice_no,
                )
            )
            return str(job.id)

    return _enqueue


@pytest.fixture
def worker(session_factory, sender, delivery_config, clock):
    return DeliveryWorker("worker-1", session_factory, sender, delivery_config, clock)


@pytest.fixture
def job_view(session_factory, clock):
    def _view(job_id: str):
        with session_scope(session_factory) as sess:
            return QueueSelector(sess, clock).get_job(job_id)

    return _view


class TestRunOnce:

    def test_idle_on_empty_queue(self, worker, sender):
        assert worker.run_once() == DeliveryOutcome.IDLE
        assert sender.sent == []

    def test_sends_and_completes(self, worker, sender, enqueue, job_view):
        job_id = enqueue("INV100")

        assert worker.run_once() == DeliveryOutcome.SENT

        assert len(sender.sent) == 1
        message = sender.sent[0]
        assert message.recipient == BUYER
        assert "INV100" in message.subject
        view = job_view(job_id)
        assert view.status == JobStatus.SENT
        assert view.locked_by is None
        assert worker.run_once() == DeliveryOutcome.IDLE

    def test_transient_failure_rescheduled(self, worker, sender, enqueue, job_view):
        job_id = enqueue()
        sender.fail_with(DeliveryError("Resend error: 503"))

        assert worker.run_once() == DeliveryOutcome.RESCHEDULED

        view = job_view(job_id)
        assert view.status == JobStatus.PENDING
        assert view.attempt_count == 1
        assert view.last_error == "Resend error: 503"
        assert sender.sent == []

    def test_permanent_failure(self, worker, sender, enqueue, job_view):
        job_id = enqueue()
        sender.fail_with(PermanentDeliveryError("Resend error: 422"))

        assert worker.run_once() == DeliveryOutcome.FAILED

        view = job_view(job_id)
        assert view.status == JobStatus.FAILED
        assert view.next_attempt_at is None

    def test_unexpected_error_recorded_as_transient(self, worker, sender, enqueue, job_view, captured_logs):
        job_id = enqueue()
        sender.fail_with(RuntimeError("socket closed"))

        assert worker.run_once() == DeliveryOutcome.RESCHEDULED

        assert job_view(job_id).last_error == "RuntimeError: socket closed"
        errors = [r for r in captured_logs() if r["message"] == "delivery_unexpected_error"]
        assert errors and errors[0]["worker_id"] == "worker-1"
        assert errors[0]["job_id"] == job_id

    def test_unregistered_template_fails_permanently(
        self, session_factory, sender, delivery_config, clock, enqueue, job_view
    ):
        job_id = enqueue()
        registry = TemplateRegistry((MessageTemplate("other", "s", "t", "h"),))
        worker = DeliveryWorker("worker-1", session_factory, sender, delivery_config, clock, registry)

        assert worker.run_once() == DeliveryOutcome.FAILED
        assert "invoice_approved" in job_view(job_id).last_error

    def test_retry_after_backoff_succeeds(self, worker, sender, enqueue, clock, job_view):
        job_id = enqueue()
        sender.fail_with(DeliveryError("timeout"))
        worker.run_once()

        assert worker.run_once() == DeliveryOutcome.IDLE
        clock.advance(30)
        assert worker.run_once() == DeliveryOutcome.SENT
        view = job_view(job_id)
        assert view.status == JobStatus.SENT
        assert view.attempt_count == 1
        assert view.last_error is None


class TestPool:

    def test_drain(self, session_factory, sender, delivery_config, clock, enqueue):
        for n in range(3):
            enqueue(f"INV{n}")
        pool = DeliveryWorkerPool(session_factory, sender, delivery_config, clock)

        assert pool.drain() == 3
        assert {m.subject for m in sender.sent} == {
            f"Payment approved for INV{n}" for n in range(3)
        }

    def test_drain_respects_max_jobs(self, session_factory, sender, delivery_config, clock, enqueue):
        for n in range(3):
            enqueue(f"INV{n}")
        pool = DeliveryWorkerPool(session_factory, sender, delivery_config, clock)
        assert pool.drain(max_jobs=2) == 2
        assert len(sender.sent) == 2

    def test_background_threads(self, session_factory, sender, delivery_config, clock, enqueue):
        config = dataclasses.replace(delivery_config, worker_count=2, poll_interval_seconds=0.05)
        pool = DeliveryWorkerPool(session_factory, sender, config, clock)
        pool.start()
        try:
            assert pool.is_running
            for n in range(5):
                enqueue(f"INV{n}")

            deadline = time.monotonic() + 15
            while len(sender.sent) < 5 and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            pool.stop(timeout=10)

        assert not pool.is_running
        assert sorted(m.subject for m in sender.sent) == sorted(
            f"Payment approved for INV{n}" for n in range(5)
        )


def test_approval_reaches_the_buyer(session_factory, presale_config, clock, sender):
    with session_scope(session_factory) as sess:
        payments = PaymentConfirmationService(sess, presale_config, clock)
        payments.create_invoice(BUYER, "1000", "stage1", "BANK_TRANSFER", invoice_no="INV100")
        payments.submit_proof("INV100", bank_proof(), actor=BUYER)
    with session_scope(session_factory) as sess:
        PaymentConfirmationService(sess, presale_config, clock).approve("INV100", None, actor=ADMIN)

    pool = DeliveryWorkerPool(session_factory, sender, presale_config.delivery, clock)
    assert pool.drain() == 2

    subjects = sorted(message.subject for message in sender.sent_to(BUYER))
    assert subjects == [
        "Payment approved for INV100",
        "Payment confirmation received for INV100",
    ]
