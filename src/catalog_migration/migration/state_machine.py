"""Allowed job status transitions."""

from typing import Final
from uuid import UUID

from catalog_migration.core.exceptions import InvalidStateError
from catalog_migration.migration.models import JobStatus

TRANSITIONS: Final[dict[JobStatus, frozenset[JobStatus]]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    # Terminal
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(job_id: UUID, current: JobStatus, target: JobStatus) -> None:
    """Raise InvalidStateError unless ``current -> target`` is an allowed edge."""
    if not can_transition(current, target):
        raise InvalidStateError(
            f"Job {job_id} cannot move from '{current.value}' to '{target.value}'",
            current_status=current.value,
        )
