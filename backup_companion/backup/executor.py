"""
Backup executor - orchestrates the complete backup workflow for a job.

Workflow:
1. Validate database sources (live connection probe)
2. Validate destinations (bucket reachability)
3. Create a time-stamped working directory
4. Dump databases and copy directories into it
5. Create the compressed archive
6. Upload the archive to every destination
7. Remove the working directory and archive (always)

Validation failures skip the job. Dump failures are per source and the job
continues with whatever was produced. Archive failures end the job before any
upload. Upload failures are per destination; the remaining destinations are
still attempted and the job finishes as completed with upload errors.
"""

import logging
import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .. import LOGGER_NAME
from ..models import Configuration, Job, JobKind, JobRun, JobStatus
from ..settings import Settings
from .cancellation import BackupCancelled, make_cancellation_check
from .compression import (
    ARCHIVE_EXTENSION,
    ArchiveError,
    create_archive,
    generate_backup_dirname,
    get_archive_size,
)
from .sources import (
    DatabaseDumper,
    DumpError,
    SourceConnectionError,
    create_database_dumper,
    create_directory_copier,
)
from .storage import StorageError, create_storage


class SourceValidationError(Exception):
    """Raised when one or more database sources of a job fail validation."""

    def __init__(self, job_name: str, errors: List[str]):
        self.job_name = job_name
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class DestinationValidationError(Exception):
    """Raised when one or more destinations of a job fail validation."""

    def __init__(self, job_name: str, errors: List[str]):
        self.job_name = job_name
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class UploadError(Exception):
    """Raised when the archive cannot be uploaded to a destination."""

    def __init__(self, destination_name: str, message: str):
        self.destination_name = destination_name
        super().__init__(f"destination {destination_name!r}: {message}")


class CleanupError(Exception):
    """Raised when temporary files of a job run cannot be removed."""
    pass


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(
        self,
        job_name: str,
        job: Job,
        config: Configuration,
        logger: Optional[logging.Logger] = None,
        cancel_event: Optional[threading.Event] = None
    ):
        """
        Initialize backup executor.

        Args:
            job_name: Name of the job in the manifest
            job: Job to execute
            config: Configuration the job's references are resolved against
            logger: Logger for progress messages (default: package logger)
            cancel_event: Optional event; once set, the run stops at the next check
        """
        self.job_name = job_name
        self.job = job
        self.config = config
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.cancellation_check = make_cancellation_check(cancel_event)
        self.run = JobRun(job_name=job_name)
        self._database_dumpers: Dict[str, DatabaseDumper] = {}

    @property
    def logs(self) -> List[str]:
        return self.run.logs

    def execute(self) -> JobRun:
        """
        Execute the backup job.

        Never raises for failures scoped to this job; they are recorded on the
        returned JobRun. Temporary files are removed on every exit path.

        Returns:
            JobRun with execution results
        """
        self.run.started_at = datetime.now()
        self._log(f"Starting backup job (kind: {self.job.kind.value})")

        try:
            self._execute_workflow()

        except SourceValidationError as e:
            self._fail(JobStatus.SKIPPED_VALIDATION, f"Skipping backup job due to database source validation failures: {e}")

        except DestinationValidationError as e:
            self._fail(JobStatus.SKIPPED_VALIDATION, f"Skipping backup job due to destination validation failures: {e}")

        except ArchiveError as e:
            self._fail(JobStatus.SKIPPED_ARCHIVE, f"Failed to create archive, no upload attempted: {e}")

        except BackupCancelled:
            self._fail(JobStatus.CANCELLED, "Backup cancelled")

        except Exception as e:
            self._fail(JobStatus.FAILED, f"Backup failed: {e}")

        finally:
            self.run.completed_at = datetime.now()
            self._cleanup()

        return self.run

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Validate database sources
        self._check_cancelled()
        self._set_status(JobStatus.VALIDATING_SOURCES)
        self._validate_sources()
        self._log("All database sources for job validated successfully")

        # Step 2: Validate destinations
        self._check_cancelled()
        self._set_status(JobStatus.VALIDATING_DESTINATIONS)
        self._validate_destinations()
        self._log("All remote destinations for job validated successfully")

        # Step 3: Create working directory
        self._check_cancelled()
        self._set_status(JobStatus.DUMPING)
        self._create_working_dir()
        self._log(f"Working directory: {self.run.working_dir}")

        # Step 4: Dump sources
        self._dump_sources()

        # Step 5: Create archive
        self._check_cancelled()
        self._set_status(JobStatus.ARCHIVING)
        self._create_archive()

        # Step 6: Upload to destinations
        self._check_cancelled()
        self._set_status(JobStatus.UPLOADING)
        upload_errors = self._upload_to_destinations()

        if upload_errors:
            self.run.status = JobStatus.COMPLETED_WITH_UPLOAD_ERRORS
            self.run.errors.extend(str(e) for e in upload_errors)
            self._log(
                f"Failed to upload archive to {len(upload_errors)} of "
                f"{len(self.job.destinations)} destination(s): "
                + "; ".join(str(e) for e in upload_errors),
                level=logging.ERROR
            )
        else:
            self.run.status = JobStatus.COMPLETED
            self._log("Archive successfully uploaded to all destinations for job")

    def _validate_sources(self):
        """
        Resolve every source of the job and probe each database.

        Raises:
            SourceValidationError: Listing every failing source
        """
        errors = []

        for db_name in self.job.databases:
            source = self.config.sources.databases.get(db_name)
            if source is None:
                errors.append(f"database {db_name!r} referenced by job {self.job_name!r} not found in sources")
                continue

            self._log("Attempting to validate database connection", level=logging.DEBUG, database=db_name)
            dumper = create_database_dumper(db_name, source)
            try:
                dumper.validate_connection(Settings.DB_CONNECT_TIMEOUT)
            except SourceConnectionError as e:
                errors.append(f"database {db_name!r} failed connection validation: {e}")
                self._log(f"Database source failed validation: {e}", level=logging.ERROR, database=db_name)
            else:
                self._database_dumpers[db_name] = dumper
                self._log("Database source validated successfully", database=db_name)

        # Directories were checked for existence when the manifest was loaded
        for dir_name in self.job.directories:
            if dir_name not in self.config.sources.directories:
                errors.append(f"directory {dir_name!r} referenced by job {self.job_name!r} not found in sources")

        if errors:
            raise SourceValidationError(self.job_name, errors)

    def _validate_destinations(self):
        """
        Create a client for every destination and check bucket access.

        Raises:
            DestinationValidationError: Listing every failing destination
        """
        errors = []

        for dest_name in self.job.destinations:
            destination = self.config.destinations.get(dest_name)
            if destination is None:
                errors.append(f"destination {dest_name!r} referenced by job {self.job_name!r} not found in config")
                continue

            self._log("Attempting to validate destination", level=logging.DEBUG, destination=dest_name)
            try:
                storage = create_storage(destination)
                storage.test_connection()
            except StorageError as e:
                errors.append(f"destination {dest_name!r} failed connection validation: {e}")
                self._log(f"Destination failed validation: {e}", level=logging.ERROR, destination=dest_name)
            else:
                self._log("Destination validated successfully", destination=dest_name)

        if errors:
            raise DestinationValidationError(self.job_name, errors)

    def _create_working_dir(self):
        """
        Create {output.dir}/{output.name}-{YYYYMMDDHHMMSS}.

        A numeric suffix is appended when a directory or archive with that
        name already exists, so runs never share paths.
        """
        output_dir = os.path.expanduser(self.job.output.dir)
        os.makedirs(output_dir, exist_ok=True)

        base_path = os.path.join(output_dir, generate_backup_dirname(self.job.output.name))
        candidate = base_path
        suffix = 0

        while True:
            if not os.path.exists(candidate + ARCHIVE_EXTENSION):
                try:
                    os.mkdir(candidate)
                    break
                except FileExistsError:
                    pass
            suffix += 1
            candidate = f"{base_path}-{suffix}"

        self.run.working_dir = candidate
        self.run.archive_path = candidate + ARCHIVE_EXTENSION

    def _dump_sources(self):
        """Dispatch the job's sources to the directory copier and database dumpers."""
        kind = self.job.kind

        if kind in (JobKind.FILES_ONLY, JobKind.BOTH):
            self._copy_directories()

        if kind in (JobKind.DATABASES_ONLY, JobKind.BOTH):
            self._dump_databases()

        failed = [name for name, error in self.run.source_results.items() if error is not None]
        if failed:
            self._log(
                f"{len(failed)} of {len(self.run.source_results)} source(s) failed, "
                f"archiving partial contents: {', '.join(failed)}",
                level=logging.WARNING
            )

    def _copy_directories(self):
        for dir_name in self.job.directories:
            result_key = f"directories.{dir_name}"
            copier = create_directory_copier(dir_name, self.config.sources.directories[dir_name])

            self._log("Backing up directory", directory=dir_name)
            try:
                path = copier.acquire(self.run.working_dir)
            except DumpError as e:
                self.run.source_results[result_key] = str(e)
                self._log(f"Error backing up directory: {e}", level=logging.ERROR, directory=dir_name)
            else:
                self.run.source_results[result_key] = None
                self._log(f"Directory copied to {path}", directory=dir_name)

            self._check_cancelled()

    def _dump_databases(self):
        for db_name in self.job.databases:
            result_key = f"databases.{db_name}"
            dumper = self._database_dumpers.get(db_name)
            if dumper is None:
                dumper = create_database_dumper(db_name, self.config.sources.databases[db_name])

            self._log(f"Performing backup for database (driver: {dumper.source.driver.value})", database=db_name)
            try:
                path = dumper.dump(self.run.working_dir, self.cancellation_check)
            except DumpError as e:
                self.run.source_results[result_key] = str(e)
                self._log(f"Database backup failed: {e}", level=logging.ERROR, database=db_name)
            else:
                self.run.source_results[result_key] = None
                self._log(f"Database backup completed successfully: {os.path.basename(path)}", database=db_name)

            self._check_cancelled()

    def _create_archive(self):
        """
        Pack the working directory into the run's archive.

        Raises:
            ArchiveError: If archive creation fails
        """
        self._log(f"Creating archive: {self.run.archive_path}")
        create_archive(self.run.working_dir, self.run.archive_path)

        self.run.archive_size = get_archive_size(self.run.archive_path)
        self.run.object_key = os.path.basename(self.run.archive_path)
        self._log(
            f"Successfully created archive: {self.run.object_key} "
            f"({self.run.archive_size / 1024 / 1024:.2f} MB)"
        )

    def _upload_to_destinations(self) -> List[UploadError]:
        """
        Upload the archive to every destination, one at a time.

        Returns:
            Errors of the destinations that failed (empty if all succeeded)
        """
        upload_errors = []

        for dest_name in self.job.destinations:
            self._log(f"Attempting to upload archive (key: {self.run.object_key})", destination=dest_name)
            try:
                self._upload_to_destination(dest_name)
            except UploadError as e:
                upload_errors.append(e)
                self.run.destination_results[dest_name] = str(e)
                self._log(f"Failed to upload archive: {e}", level=logging.ERROR, destination=dest_name)
            else:
                self.run.destination_results[dest_name] = None
                self._log("Successfully uploaded archive", destination=dest_name)

        return upload_errors

    def _upload_to_destination(self, dest_name: str):
        """
        Raises:
            UploadError: If the client cannot be created, the bucket is unreachable or the upload fails
        """
        destination = self.config.destinations.get(dest_name)
        if destination is None:
            raise UploadError(dest_name, f"not found in config during upload of job {self.job_name!r}")

        try:
            storage = create_storage(destination)
            storage.test_connection()
            storage.upload(self.run.archive_path, self.run.object_key, self.cancellation_check)
        except StorageError as e:
            raise UploadError(dest_name, str(e))

    def _cleanup(self):
        """Remove the working directory and archive. Failures are logged only."""
        working_dir = self.run.working_dir
        archive_path = self.run.archive_path

        if working_dir and os.path.exists(working_dir):
            try:
                shutil.rmtree(working_dir)
                self._log(f"Cleaned up temporary backup directory: {working_dir}")
            except Exception as e:
                self._cleanup_failed(CleanupError(f"Failed to cleanup temporary backup directory {working_dir}: {e}"))

        if archive_path and os.path.exists(archive_path):
            try:
                os.remove(archive_path)
                self._log(f"Cleaned up archive file: {archive_path}")
            except Exception as e:
                self._cleanup_failed(CleanupError(f"Failed to cleanup archive file {archive_path}: {e}"))

    def _cleanup_failed(self, error: CleanupError):
        self.run.cleanup_errors.append(str(error))
        self._log(str(error), level=logging.ERROR)

    def _check_cancelled(self):
        if self.cancellation_check:
            self.cancellation_check()

    def _set_status(self, status: JobStatus):
        self.run.status = status
        self._log(f"Status: {status.value}", level=logging.DEBUG)

    def _fail(self, status: JobStatus, message: str):
        self.run.status = status
        self.run.errors.append(message)
        self._log(message, level=logging.WARNING if status == JobStatus.CANCELLED else logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO, **context):
        """
        Add a log message with timestamp and job context.

        Args:
            message: Log message
            level: Logging level
            **context: Extra identifiers (database=, directory=, destination=)
        """
        fields = [f"job={self.job_name}"] + [f"{key}={value}" for key, value in context.items()]
        entry = f"[{' '.join(fields)}] {message}"

        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.run.logs.append(f"[{timestamp}] {logging.getLevelName(level)} {entry}")
        self.logger.log(level, entry)


def run_all_jobs(
    config: Configuration,
    logger: Optional[logging.Logger] = None,
    max_workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
    job_names: Optional[Iterable[str]] = None
) -> List[JobRun]:
    """
    Run every configured job (or the named subset) once.

    Jobs are independent: a failing job never stops the others and nothing is
    retried. With max_workers > 1 jobs run concurrently on a thread pool.

    Args:
        config: Validated configuration
        logger: Logger passed to every executor
        max_workers: Number of jobs to run at the same time
        cancel_event: Optional event; jobs observe it and stop early
        job_names: Restrict the run to these jobs

    Returns:
        One JobRun per job, in job name order

    Raises:
        ValueError: If job_names contains a job that is not configured
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    names = _select_jobs(config, job_names)

    logger.info(f"Running {len(names)} backup job(s)")

    def run_job(name: str) -> JobRun:
        executor = BackupExecutor(name, config.jobs[name], config, logger=logger, cancel_event=cancel_event)
        return executor.execute()

    if max_workers <= 1 or len(names) <= 1:
        runs = [run_job(name) for name in names]
    else:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='backup-job') as pool:
            runs = list(pool.map(run_job, names))

    succeeded = sum(1 for run in runs if run.succeeded)
    logger.info(f"Finished {len(runs)} backup job(s): {succeeded} completed, {len(runs) - succeeded} with failures")
    return runs


def execute_backup_job_by_name(
    config: Configuration,
    job_name: str,
    logger: Optional[logging.Logger] = None,
    cancel_event: Optional[threading.Event] = None
) -> JobRun:
    """
    Execute a backup job by name.

    Args:
        config: Validated configuration
        job_name: Name of the job

    Returns:
        JobRun with execution results

    Raises:
        ValueError: If job not found
    """
    job = config.jobs.get(job_name)

    if job is None:
        raise ValueError(f"Backup job not found: {job_name}")

    executor = BackupExecutor(job_name, job, config, logger=logger, cancel_event=cancel_event)
    return executor.execute()


def validate_all_destinations(config: Configuration, logger: Optional[logging.Logger] = None) -> List[str]:
    """
    Check connectivity of every configured destination.

    Returns:
        One message per failing destination (empty if all are reachable)
    """
    logger = logger or logging.getLogger(LOGGER_NAME)
    errors = []

    for dest_name in sorted(config.destinations):
        try:
            storage = create_storage(config.destinations[dest_name])
            storage.test_connection()
        except StorageError as e:
            errors.append(f"destination {dest_name!r} failed validation: {e}")
            logger.error(f"[destination={dest_name}] Destination failed validation: {e}")
        else:
            logger.info(f"[destination={dest_name}] Destination validated successfully")

    return errors


def _select_jobs(config: Configuration, job_names: Optional[Iterable[str]]) -> List[str]:
    if job_names is None:
        return sorted(config.jobs)

    names = list(dict.fromkeys(job_names))
    unknown = [name for name in names if name not in config.jobs]
    if unknown:
        raise ValueError(f"Backup job not found: {', '.join(unknown)}")
    return names
