"""Exception taxonomy for the migration pipeline."""

from typing import Any


class MigrationError(Exception):
    """Base application exception."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ConfigurationError(MigrationError):
    """Bad mapping, missing table/columns or otherwise unusable configuration.

    Fatal: a job that hits it never starts, or fails immediately when running.
    """


class InvalidStateError(MigrationError):
    """Illegal status transition or control request."""

    def __init__(self, message: str, current_status: str | None = None):
        self.current_status = current_status
        super().__init__(message)


class JobNotFoundError(MigrationError):
    """Job id not present in the job store."""

    def __init__(self, job_id: Any):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class SourceConnectionError(MigrationError):
    """Source or destination database unreachable.

    Retried at batch granularity by the run loop.
    """


class ThrottlingError(MigrationError):
    """Remote service quota still exhausted after the retry budget."""

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message)


class BatchIntegrityError(MigrationError):
    """Batch success rate fell below the commit threshold; the batch was rolled back."""

    def __init__(self, inserted: int, attempted: int, errors: list[str], threshold: float):
        self.inserted = inserted
        self.attempted = attempted
        self.errors = errors
        self.threshold = threshold
        rate = inserted / attempted if attempted else 0.0
        super().__init__(
            f"Batch failed: only {rate:.0%} of {attempted} records succeeded "
            f"(threshold {threshold:.0%}), rollback applied"
        )


class RecordError(MigrationError):
    """Single-record failure. Logged, never aborts the batch."""

    def __init__(self, key: Any, message: str):
        self.key = key
        super().__init__(f"Record {key}: {message}")
