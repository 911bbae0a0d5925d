from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class DatabaseDriver(str, Enum):
    """Supported database engines"""
    POSTGRES = 'postgres'
    MYSQL = 'mysql'


class StorageProvider(str, Enum):
    """Supported object storage providers"""
    S3 = 's3'
    MINIO = 'minio'


class JobKind(str, Enum):
    """Composition of a job's sources"""
    FILES_ONLY = 'files-only'
    DATABASES_ONLY = 'databases-only'
    BOTH = 'both'


@dataclass(frozen=True)
class DatabaseSource:
    """Database connection settings"""
    driver: DatabaseDriver
    host: str
    port: int
    user: str
    password: str
    database_name: str

    def __repr__(self):
        return f'<DatabaseSource {self.driver.value}://{self.user}@{self.host}:{self.port}/{self.database_name}>'


@dataclass(frozen=True)
class DirectorySource:
    """Local directory to copy into the backup"""
    path: str


@dataclass(frozen=True)
class Destination:
    """Object storage bucket and credentials"""
    provider: StorageProvider
    bucket_name: str
    access_key_id: str
    secret_access_key: str
    region: Optional[str] = None
    endpoint_url: Optional[str] = None

    def __repr__(self):
        return f'<Destination {self.provider.value} bucket={self.bucket_name}>'


@dataclass(frozen=True)
class OutputSpec:
    """Base directory and name used for a job's working files"""
    dir: str
    name: str


@dataclass(frozen=True)
class Job:
    """Binding of sources to destinations"""
    output: OutputSpec
    databases: Tuple[str, ...] = ()
    directories: Tuple[str, ...] = ()
    destinations: Tuple[str, ...] = ()

    @property
    def kind(self) -> JobKind:
        has_files = len(self.directories) > 0
        has_databases = len(self.databases) > 0

        if has_files and not has_databases:
            return JobKind.FILES_ONLY
        if has_databases and not has_files:
            return JobKind.DATABASES_ONLY
        # Reference validation rejects jobs without any source
        return JobKind.BOTH


@dataclass(frozen=True)
class Sources:
    databases: Dict[str, DatabaseSource] = field(default_factory=dict)
    directories: Dict[str, DirectorySource] = field(default_factory=dict)


@dataclass(frozen=True)
class Configuration:
    """Root of a loaded backup manifest"""
    sources: Sources = field(default_factory=Sources)
    destinations: Dict[str, Destination] = field(default_factory=dict)
    jobs: Dict[str, Job] = field(default_factory=dict)


class JobStatus(str, Enum):
    """States of a single job run"""
    PENDING = 'pending'
    VALIDATING_SOURCES = 'validating_sources'
    VALIDATING_DESTINATIONS = 'validating_destinations'
    DUMPING = 'dumping'
    ARCHIVING = 'archiving'
    UPLOADING = 'uploading'
    SKIPPED_VALIDATION = 'skipped_validation'
    SKIPPED_ARCHIVE = 'skipped_archive'
    COMPLETED = 'completed'
    COMPLETED_WITH_UPLOAD_ERRORS = 'completed_with_upload_errors'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    JobStatus.SKIPPED_VALIDATION,
    JobStatus.SKIPPED_ARCHIVE,
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_UPLOAD_ERRORS,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


@dataclass
class JobRun:
    """Execution record of one job; lives only for the duration of the run"""
    job_name: str
    status: JobStatus = JobStatus.PENDING
    working_dir: Optional[str] = None
    archive_path: Optional[str] = None
    object_key: Optional[str] = None
    archive_size: Optional[int] = None
    source_results: Dict[str, Optional[str]] = field(default_factory=dict)  # name -> error message or None
    destination_results: Dict[str, Optional[str]] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    cleanup_errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED

    @property
    def failed(self) -> bool:
        return self.status.is_terminal and self.status != JobStatus.COMPLETED

    @property
    def uploaded_destinations(self) -> List[str]:
        return [name for name, error in self.destination_results.items() if error is None]

    def __repr__(self):
        return f'<JobRun job={self.job_name} status={self.status.value}>'
