"""Central constants shared across the migration stack."""

from typing import Final

# Remote operation categories, each with its own limiter.
CATEGORY_EMBEDDING: Final[str] = "embedding"
CATEGORY_COMPLETION: Final[str] = "completion"

# HTTP status the remote service uses to signal throttling.
HTTP_TOO_MANY_REQUESTS: Final[int] = 429

# Destination column holding the vector.
EMBEDDING_COLUMN: Final[str] = "embedding"

# Recorded as resumed_from when a resume job starts with no prior checkpoint.
RESUME_FROM_START: Final[str] = "START"

# Job store defaults.
JOBS_TABLE: Final[str] = "migration_jobs"
DEFAULT_LIST_LIMIT: Final[int] = 50
