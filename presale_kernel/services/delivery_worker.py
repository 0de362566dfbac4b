"""
DeliveryWorker / DeliveryWorkerPool -- in-process notification delivery.

Contract:
    A worker processes one job per ``run_once()``:

        1. claim the next due job in its own short transaction (committed,
           so the lease is visible to every other worker);
        2. render the template;
        3. call the sender OUTSIDE any transaction;
        4. record ``complete`` or ``fail`` in a new transaction.

    The pool runs a fixed number of worker threads.  A claim that finds
    nothing waits ``poll_interval_seconds`` on the stop event.

Invariants enforced:
    - No database transaction is open while the sender runs.
    - A failure while processing one job is logged and recorded against
      that job; it never stops the loop.
    - A worker that dies between claim and result leaves the job locked
      until its lease expires; the next claim after that recovers it.
"""

from __future__ import annotations

import threading
from enum import Enum
from typing import Callable

from sqlalchemy.orm import Session

from presale_config.schema import DeliveryConfig
from presale_kernel.db.engine import session_scope
from presale_kernel.domain.clock import Clock, SystemClock
from presale_kernel.domain.delivery import CompleteStatus, FailStatus, JobView
from presale_kernel.domain.templates import TemplateRegistry
from presale_kernel.exceptions import (
    DeliveryError,
    PermanentDeliveryError,
    UnknownTemplateError,
)
from presale_kernel.logging_config import LogContext, get_logger
from presale_kernel.services.notification_queue import NotificationQueue
from presale_kernel.services.senders import MessageSender

logger = get_logger("services.delivery_worker")


class DeliveryOutcome(str, Enum):
    """What one ``run_once()`` call did."""

    IDLE = "IDLE"
    SENT = "SENT"
    RESCHEDULED = "RESCHEDULED"
    FAILED = "FAILED"
    NOOP = "NOOP"


class DeliveryWorker:
    """Claims, sends and resolves notification jobs one at a time."""

    def __init__(
        self,
        worker_id: str,
        session_factory: Callable[[], Session],
        sender: MessageSender,
        config: DeliveryConfig,
        clock: Clock | None = None,
        templates: TemplateRegistry | None = None,
    ):
        self.worker_id = worker_id
        self._session_factory = session_factory
        self._sender = sender
        self._config = config
        self._clock = clock or SystemClock()
        self._templates = templates or TemplateRegistry()

    def _queue(self, session: Session) -> NotificationQueue:
        return NotificationQueue(session, self._config, self._clock, self._templates)

    def run_once(self) -> DeliveryOutcome:
        """Process at most one due job.  Returns IDLE when none was claimable."""
        with LogContext.bind(worker_id=self.worker_id):
            with session_scope(self._session_factory) as session:
                claim = self._queue(session).claim_next(self.worker_id)
            if not claim.is_claimed:
                return DeliveryOutcome.IDLE

            job = claim.job
            with LogContext.bind(job_id=job.job_id):
                error, permanent = self._deliver(job)
                return self._record(job, error, permanent)

    def _deliver(self, job: JobView) -> tuple[str | None, bool]:
        """Render and send.  Returns (error text or None, permanent)."""
        try:
            message = self._templates.render(job.template_id, job.recipient, job.variables)
            self._sender.send(message)
        except (PermanentDeliveryError, UnknownTemplateError) as exc:
            logger.error(
                "delivery_failed_permanently",
                extra={"template_id": job.template_id, "error": str(exc)},
            )
            return str(exc), True
        except DeliveryError as exc:
            logger.warning(
                "delivery_failed",
                extra={"template_id": job.template_id, "error": str(exc)},
            )
            return str(exc), False
        except Exception as exc:
            logger.exception("delivery_unexpected_error", extra={"template_id": job.template_id})
            return f"{type(exc).__name__}: {exc}", False
        return None, False

    def _record(self, job: JobView, error: str | None, permanent: bool) -> DeliveryOutcome:
        with session_scope(self._session_factory) as session:
            queue = self._queue(session)
            if error is None:
                result = queue.complete(job.job_id, self.worker_id)
                if result.status == CompleteStatus.SENT:
                    return DeliveryOutcome.SENT
                return DeliveryOutcome.NOOP

            result = queue.fail(job.job_id, error, self.worker_id, permanent=permanent)
            if result.status == FailStatus.RESCHEDULED:
                return DeliveryOutcome.RESCHEDULED
            if result.status == FailStatus.EXHAUSTED:
                return DeliveryOutcome.FAILED
            return DeliveryOutcome.NOOP


class DeliveryWorkerPool:
    """Fixed-size pool of delivery worker threads.

    Contract:
        - ``start()`` / ``stop()`` for background operation.
        - ``drain()`` processes due jobs synchronously on the caller's
          thread (tests, one-shot cron runs).
        - Respects the stop signal between jobs; a job in progress is
          finished before its thread exits.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sender: MessageSender,
        config: DeliveryConfig,
        clock: Clock | None = None,
        templates: TemplateRegistry | None = None,
        worker_prefix: str = "worker",
    ):
        self._config = config
        self._poll_interval = config.poll_interval_seconds
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.workers = [
            DeliveryWorker(
                worker_id=f"{worker_prefix}-{index}",
                session_factory=session_factory,
                sender=sender,
                config=config,
                clock=clock,
                templates=templates,
            )
            for index in range(config.worker_count)
        ]

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return

        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                args=(worker,),
                name=f"delivery-{worker.worker_id}",
                daemon=True,
            )
            for worker in self.workers
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "worker_pool_started",
            extra={"worker_count": len(self.workers), "poll_interval": self._poll_interval},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for every worker thread to finish.

        Args:
            timeout: Max seconds to wait for each thread.
        """
        self._stop_event.set()
        for thread in self._threads:
            if thread.is_alive():
                thread.join(timeout=timeout)
        logger.info("worker_pool_stopped")

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def drain(self, max_jobs: int | None = None) -> int:
        """Process due jobs on this thread until none is claimable.

        Returns the number of jobs processed.
        """
        worker = self.workers[0]
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if worker.run_once() == DeliveryOutcome.IDLE:
                break
            processed += 1
        logger.info("worker_pool_drained", extra={"processed": processed})
        return processed

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self, worker: DeliveryWorker) -> None:
        while not self._stop_event.is_set():
            try:
                outcome = worker.run_once()
            except Exception:
                logger.exception("worker_iteration_failed", extra={"worker_id": worker.worker_id})
                outcome = DeliveryOutcome.IDLE
            if outcome == DeliveryOutcome.IDLE:
                self._stop_event.wait(timeout=self._poll_interval)
