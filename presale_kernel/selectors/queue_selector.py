"""
Module: presale_kernel.selectors.queue_selector
Responsibility: Point-in-time views of the notification queue for the admin
    dashboard: counts per status, in-flight and stuck jobs, per-job health.

Health is derived at read time from the lock columns and the selector's
clock; nothing here is stored.
"""

from uuid import UUID

from sqlalchemy import and_, func, select

from presale_kernel.domain.delivery import JobHealth, JobStatus, JobView, QueueSnapshot
from presale_kernel.exceptions import JobNotFoundError
from presale_kernel.models.notification_job import NotificationJob
from presale_kernel.selectors.base import BaseSelector

_TERMINAL = (JobStatus.SENT.value, JobStatus.CANCELLED.value)


class QueueSelector(BaseSelector[NotificationJob]):
    """Selector for the notification queue."""

    def counts_by_status(self) -> dict[str, int]:
        """Job count per status; every status is present, zero if empty."""
        counts = {status.value: 0 for status in JobStatus}
        rows = self.session.execute(
            select(NotificationJob.status, func.count()).group_by(NotificationJob.status)
        ).all()
        for status, count in rows:
            counts[status] = count
        return counts

    def _locked_count(self, *conditions) -> int:
        return self.session.execute(
            select(func.count())
            .select_from(NotificationJob)
            .where(
                NotificationJob.locked_by.is_not(None),
                NotificationJob.lock_expires_at.is_not(None),
                NotificationJob.status.not_in(_TERMINAL),
                *conditions,
            )
        ).scalar_one()

    def snapshot(self) -> QueueSnapshot:
        now = self.clock.now()
        return QueueSnapshot(
            counts=self.counts_by_status(),
            in_flight=self._locked_count(NotificationJob.lock_expires_at > now),
            stuck=self._locked_count(NotificationJob.lock_expires_at <= now),
            taken_at=now,
        )

    def get_job(self, job_id: UUID | str) -> JobView:
        try:
            key = job_id if isinstance(job_id, UUID) else UUID(str(job_id))
        except ValueError:
            raise JobNotFoundError(str(job_id)) from None
        job = self.session.execute(
            select(NotificationJob)
            .where(NotificationJob.id == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job.to_view(self.clock.now())

    def job_health(self, job_id: UUID | str) -> JobHealth:
        return self.get_job(job_id).health

    def jobs_for_source(self, source_type: str, source_id: str) -> list[JobView]:
        now = self.clock.now()
        rows = self.session.execute(
            select(NotificationJob)
            .where(
                and_(
                    NotificationJob.source_type == source_type,
                    NotificationJob.source_id == source_id,
                )
            )
            .order_by(NotificationJob.created_at)
        ).scalars()
        return [job.to_view(now) for job in rows]
