"""
Competing admin decisions on one invoice.

Exactly one of two conflicting reviews takes effect, and it alone gets an
audit entry and a buyer notification.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest
from sqlalchemy import select

from conftest import ADMIN
from presale_kernel.db.engine import session_scope
from presale_kernel.domain.invoice import InvoiceStatus, TransitionStatus
from presale_kernel.exceptions import (
    ConcurrentModificationError,
    InvalidStateTransitionError,
)
from presale_kernel.models.notification_job import NotificationJob
from presale_kernel.selectors.audit_selector import AuditSelector
from presale_kernel.services.invoice_store import InvoiceStore
from presale_kernel.services.payment_confirmation import PaymentConfirmationService

pytestmark = pytest.mark.slow_locks

REVIEW_TEMPLATES = ("invoice_approved", "invoice_rejected")


def review_jobs(session_factory) -> list[str]:
    with session_scope(session_factory) as sess:
        return list(
            sess.execute(
                select(NotificationJob.template_id).where(
                    NotificationJob.source_id == "INV100",
                    NotificationJob.template_id.in_(REVIEW_TEMPLATES),
                )
            ).scalars()
        )


def review_actions(session_factory, clock) -> list[str]:
    with session_scope(session_factory) as sess:
        actions = AuditSelector(sess, clock).trace("Invoice", "INV100").actions
    return [a for a in actions if a in ("INVOICE_APPROVED", "INVOICE_REJECTED")]


class TestInterleavedReview:

    def test_stale_status_write_is_refused(self, session_factory, presale_config, clock, committed_invoice):
        committed_invoice("INV100", submit=True)

        with session_scope(session_factory) as sess:
            PaymentConfirmationService(sess, presale_config, clock).approve(
                "INV100", note="ok", actor=ADMIN
            )

        # A second admin still believes the invoice is under review.
        with pytest.raises(ConcurrentModificationError):
            with session_scope(session_factory) as sess:
                InvoiceStore(sess, clock).transition(
                    "INV100", InvoiceStatus.PENDING_REVIEW, InvoiceStatus.REJECTED
                )

        assert review_actions(session_factory, clock) == ["INVOICE_APPROVED"]
        assert review_jobs(session_factory) == ["invoice_approved"]

    def test_reject_after_approve(self, session_factory, presale_config, clock, committed_invoice):
        committed_invoice("INV100", submit=True)

        with session_scope(session_factory) as sess:
            PaymentConfirmationService(sess, presale_config, clock).approve(
                "INV100", note="ok", actor=ADMIN
            )
        with pytest.raises(InvalidStateTransitionError):
            with session_scope(session_factory) as sess:
                PaymentConfirmationService(sess, presale_config, clock).reject(
                    "INV100", note="late", actor="other-admin@tpcglobal.io"
                )

        assert review_jobs(session_factory) == ["invoice_approved"]

    def test_duplicate_approve_is_already_processed(
        self, session_factory, presale_config, clock, committed_invoice
    ):
        committed_invoice("INV100", submit=True)

        results = []
        for actor in (ADMIN, "other-admin@tpcglobal.io"):
            with session_scope(session_factory) as sess:
                results.append(
                    PaymentConfirmationService(sess, presale_config, clock).approve(
                        "INV100", note=None, actor=actor
                    )
                )

        assert [r.status for r in results] == [
            TransitionStatus.TRANSITIONED,
            TransitionStatus.ALREADY_PROCESSED,
        ]
        assert review_actions(session_factory, clock) == ["INVOICE_APPROVED"]
        assert review_jobs(session_factory) == ["invoice_approved"]


@pytest.mark.postgres
def test_concurrent_approve_and_reject(postgres_engine, session_factory, presale_config, clock, committed_invoice):
    committed_invoice("INV100", submit=True)
    barrier = Barrier(2, timeout=30)

    def review(decision: str):
        barrier.wait()
        try:
            with session_scope(session_factory) as sess:
                service = PaymentConfirmationService(sess, presale_config, clock)
                if decision == "approve":
                    return service.approve("INV100", note="ok", actor=ADMIN).status
                return service.reject("INV100", note="no", actor="other-admin@tpcglobal.io").status
        except (ConcurrentModificationError, InvalidStateTransitionError) as exc:
            return exc.code

    with ThreadPoolExecutor(max_workers=2) as executor:
        outcomes = list(executor.map(review, ["approve", "reject"]))

    assert outcomes.count(TransitionStatus.TRANSITIONED) == 1
    assert len(review_actions(session_factory, clock)) == 1
    assert len(review_jobs(session_factory)) == 1


@pytest.mark.postgres
def test_many_identical_approvals(postgres_engine, session_factory, presale_config, clock, committed_invoice):
    committed_invoice("INV100", submit=True)
    num_admins = 6
    barrier = Barrier(num_admins, timeout=30)

    def approve(index: int):
        barrier.wait()
        with session_scope(session_factory) as sess:
            return PaymentConfirmationService(sess, presale_config, clock).approve(
                "INV100", note=None, actor=f"admin-{index}@tpcglobal.io"
            ).status

    with ThreadPoolExecutor(max_workers=num_admins) as executor:
        outcomes = list(executor.map(approve, range(num_admins)))

    assert outcomes.count(TransitionStatus.TRANSITIONED) == 1
    assert outcomes.count(TransitionStatus.ALREADY_PROCESSED) == num_admins - 1
    assert review_jobs(session_factory) == ["invoice_approved"]
