"""
Delivery domain types (``presale_kernel.domain.delivery``).

Responsibility
--------------
Pure value objects and functions for the notification delivery queue:
job statuses, retry backoff, the derived lock-health indicator, and the
typed outcomes returned by claim/complete/fail.

Architecture position
---------------------
**Kernel domain layer** -- pure.  ZERO I/O.

Invariants enforced
-------------------
* SENT and CANCELLED are terminal.  FAILED is terminal until manual retry.
* ``compute_backoff`` is non-decreasing in the attempt number and never
  exceeds ``max_delay_seconds``.
* Health is derived from lock timestamps only; it is never stored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Notification job lifecycle states."""

    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.SENT,
    JobStatus.CANCELLED,
})

RETRYABLE_JOB_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


# =========================================================================
# Backoff
# =========================================================================


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff without jitter.

    ``delay(n) = min(base * multiplier ** (n - 1), max_delay)`` for the
    n-th failed attempt (n >= 1).
    """

    base_delay_seconds: float = 30.0
    multiplier: float = 2.0
    max_delay_seconds: float = 3600.0


def compute_backoff(attempt: int, policy: BackoffPolicy) -> float:
    """Delay in seconds before the attempt following failure number ``attempt``."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    cap = policy.max_delay_seconds
    delay = policy.base_delay_seconds
    if delay >= cap or policy.multiplier <= 1:
        return min(delay, cap)

    # Multiply step by step so large attempt numbers never overflow.
    for _ in range(attempt - 1):
        delay *= policy.multiplier
        if delay >= cap:
            return cap
    return delay


# =========================================================================
# Health
# =========================================================================


class JobHealth(str, Enum):
    """Read-only lock health of a job."""

    HEALTHY = "HEALTHY"
    IN_FLIGHT = "IN_FLIGHT"
    STUCK = "STUCK"


def derive_health(
    status: JobStatus,
    locked_by: str | None,
    lock_expires_at: datetime | None,
    now: datetime,
) -> JobHealth:
    """
    HEALTHY: not locked.  IN_FLIGHT: lock still within its lease.
    STUCK: lock held past its lease without reaching a terminal state.
    """
    if locked_by is None or lock_expires_at is None:
        return JobHealth.HEALTHY
    if lock_expires_at > now:
        return JobHealth.IN_FLIGHT
    if status in TERMINAL_JOB_STATUSES:
        return JobHealth.HEALTHY
    return JobHealth.STUCK


def lock_is_live(
    locked_by: str | None,
    lock_expires_at: datetime | None,
    now: datetime,
) -> bool:
    """True while a worker holds an unexpired lease."""
    return locked_by is not None and lock_expires_at is not None and lock_expires_at > now


# =========================================================================
# Outcomes
# =========================================================================


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    UNAVAILABLE = "unavailable"


class CompleteStatus(str, Enum):
    SENT = "sent"
    NOOP = "noop"


class FailStatus(str, Enum):
    RESCHEDULED = "rescheduled"
    EXHAUSTED = "exhausted"
    NOOP = "noop"


@dataclass(frozen=True)
class EnqueueRequest:
    """A notification to put on the queue."""

    recipient: str
    template_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    dedupe_key: str | None = None
    source_type: str | None = None
    source_id: str | None = None
    max_attempts: int | None = None


@dataclass(frozen=True)
class JobView:
    """Immutable snapshot of a notification job."""

    job_id: str
    recipient: str
    template_id: str
    variables: dict[str, Any]
    status: JobStatus
    attempt_count: int
    max_attempts: int
    next_attempt_at: datetime | None
    last_attempt_at: datetime | None
    last_error: str | None
    locked_by: str | None
    lock_expires_at: datetime | None
    lease_seconds: int
    sent_at: datetime | None
    source_type: str | None
    source_id: str | None
    health: JobHealth


@dataclass(frozen=True)
class ClaimResult:
    """Outcome of claim_next.

    ``reclaimed_from`` names the previous lock holder when the claim
    recovered a job whose lease had expired.
    """

    status: ClaimStatus
    job: JobView | None = None
    reclaimed_from: str | None = None

    @property
    def is_claimed(self) -> bool:
        return self.status == ClaimStatus.CLAIMED

    @classmethod
    def unavailable(cls) -> ClaimResult:
        return cls(status=ClaimStatus.UNAVAILABLE)


@dataclass(frozen=True)
class CompleteResult:
    status: CompleteStatus
    job_id: str
    job_status: JobStatus


@dataclass(frozen=True)
class FailResult:
    """Outcome of fail.  EXHAUSTED means the job is now FAILED."""

    status: FailStatus
    job_id: str
    job_status: JobStatus
    attempt_count: int
    next_attempt_at: datetime | None = None


@dataclass(frozen=True)
class QueueSnapshot:
    """Point-in-time view of the queue for the admin dashboard."""

    counts: dict[str, int]
    in_flight: int
    stuck: int
    taken_at: datetime

    @property
    def total(self) -> int:
        return sum(self.counts.values())
