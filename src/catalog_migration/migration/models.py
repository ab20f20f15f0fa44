"""Pydantic models for migration job tracking."""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, model_validator

# Business keys are product codes in practice, but integer keys work the same way.
Key = str | int


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Job status enum."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED)


class SourceSpec(BaseModel):
    """Where and how to read source rows."""

    table: str
    fields: dict[str, str]  # destination field -> source column
    key_field: str = "code"
    text_field: str | None = "description"
    filter: str | None = None  # Raw SQL predicate, operator supplied
    start_after: Key | None = None  # Checkpoint predicate: key > start_after
    exclude_key_prefixes: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_fields(self) -> "SourceSpec":
        if not self.fields:
            raise ValueError("fields mapping must not be empty")
        if self.key_field not in self.fields:
            raise ValueError(f"key_field '{self.key_field}' is not in the field mapping")
        if self.text_field is not None and self.text_field not in self.fields:
            raise ValueError(f"text_field '{self.text_field}' is not in the field mapping")
        return self

    @property
    def key_column(self) -> str:
        """Source column holding the business key."""
        return self.fields[self.key_field]


class DestinationSpec(BaseModel):
    """Destination table and load options."""

    table: str
    clean_before: bool = False
    create_indexes: bool = True


class TextCleaningSpec(BaseModel):
    """Acronym expansion options for embedding text."""

    enabled: bool = True
    acronym_mapping: dict[str, str] = Field(default_factory=dict)


class ProcessingSpec(BaseModel):
    """Batching, pacing and retry options.

    ``pause_requested`` / ``cancel_requested`` mirror control requests for
    operators inspecting the store; the run loop itself listens on its
    in-process control channel.
    """

    batch_size: int = Field(default=500, gt=0)
    embedding_batch_size: int = Field(default=50, gt=0)
    max_concurrent_embeddings: int = Field(default=3, gt=0)
    delay_between_batches_ms: int = Field(default=1000, ge=0)
    retry_attempts: int = Field(default=3, ge=0)
    text_cleaning: TextCleaningSpec = Field(default_factory=TextCleaningSpec)
    pause_requested: bool = False
    cancel_requested: bool = False


class JobProgress(BaseModel):
    """Live progress counters."""

    total: int = 0
    processed: int = 0
    errors: int = 0
    percentage: float = 0.0
    current_batch: int = 0
    records_per_second: float = 0.0
    estimated_remaining_minutes: float | None = None
    last_key: Key | None = None  # Key of the last record of the last consumed batch


class FinalStats(BaseModel):
    """Aggregate statistics written on completion."""

    total_processed: int
    total_errors: int
    duration_seconds: float


class MigrationConfig(BaseModel):
    """Everything needed to create a job."""

    source: SourceSpec
    destination: DestinationSpec
    processing: ProcessingSpec = Field(default_factory=ProcessingSpec)


class MigrationJob(BaseModel):
    """Represents a migration job record in the job store."""

    id: UUID = Field(default_factory=uuid4)
    status: JobStatus = JobStatus.PENDING
    source: SourceSpec
    destination: DestinationSpec
    processing: ProcessingSpec
    progress: JobProgress = Field(default_factory=JobProgress)
    error_log: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    final_stats: FinalStats | None = None
    resumed_from: str | None = None
    heartbeat_at: datetime | None = None  # Last write by the owning run loop

    @property
    def last_error(self) -> str | None:
        return self.error_log[-1] if self.error_log else None

    @property
    def estimated_completion(self) -> datetime | None:
        minutes = self.progress.estimated_remaining_minutes
        if self.status != JobStatus.RUNNING or minutes is None:
            return None
        return utcnow() + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Transient pipeline values
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Record:
    """One source row travelling through normalization, embedding and loading."""

    key: Key
    source_row: dict[str, Any]
    row: dict[str, Any]  # Destination-shaped; always carries the original text
    embedding_text: str | None = None  # Expanded text, only ever sent to the embedding call
    embedding: list[float] | None = None
    expansion_applied: bool = False
    expansion_locked: bool = False


@dataclass(slots=True)
class LoadResult:
    """Outcome of a committed batch."""

    inserted_count: int
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MigrationStats:
    """What the destination already holds."""

    total_migrated: int
    last_migrated_key: Key | None
    with_embeddings: int


@dataclass(slots=True)
class PendingWork:
    """Source rows still to migrate after a checkpoint."""

    pending_count: int
    next_batch: list[dict[str, Any]]


@dataclass(slots=True)
class ResumeResult:
    """Outcome of a resume-from-checkpoint request."""

    job_id: UUID | None
    resumed_from: Key | None
    total_pending: int


@dataclass(slots=True)
class IntegrityReport:
    """Sampled destination checks."""

    valid: bool
    issues: list[str] = field(default_factory=list)
