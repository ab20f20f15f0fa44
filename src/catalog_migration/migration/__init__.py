"""Migration module for moving a MySQL catalog into a vector-indexed store."""

from catalog_migration.migration.config import MigrationSettings
from catalog_migration.migration.job_store import InMemoryJobStore, JobStore
from catalog_migration.migration.models import (
    DestinationSpec,
    JobProgress,
    JobStatus,
    MigrationConfig,
    MigrationJob,
    ProcessingSpec,
    SourceSpec,
    TextCleaningSpec,
)
from catalog_migration.migration.mysql_client import MySQLClient, SourceReader
from catalog_migration.migration.supabase_client import SupabaseJobStore

__all__ = [
    # Config
    "MigrationSettings",
    # Models
    "DestinationSpec",
    "JobProgress",
    "JobStatus",
    "MigrationConfig",
    "MigrationJob",
    "ProcessingSpec",
    "SourceSpec",
    "TextCleaningSpec",
    # Stores & clients
    "InMemoryJobStore",
    "JobStore",
    "MySQLClient",
    "SourceReader",
    "SupabaseJobStore",
]
