"""
Source handlers for backup operations.

Supports:
- PostgresDumper: pg_dump in custom (compressed) format
- MySQLDumper: mysqldump output streamed through gzip
- DirectoryCopier: copy a local directory tree

Every handler writes into a job's working directory. Database passwords are
handed to the dump utilities through the process environment only.
"""

import gzip
import os
import shutil
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL
from sqlalchemy.pool import NullPool

from ..models import DatabaseDriver, DatabaseSource, DirectorySource
from ..settings import Settings
from .cancellation import BackupCancelled
from .compression import sanitize_name


class DumpError(Exception):
    """Raised when a source cannot be dumped or copied."""
    pass


class SourceConnectionError(Exception):
    """Raised when a database source cannot be reached."""
    pass


class DatabaseDumper:
    """
    Base handler for database sources.

    Subclasses set the SQLAlchemy driver used for the connectivity probe, the
    dump file extension and the environment variable carrying the password.
    """

    sqlalchemy_driver = None
    file_extension = None
    password_env = None

    def __init__(self, name: str, source: DatabaseSource):
        """
        Initialize database dumper.

        Args:
            name: Source name from the manifest
            source: Database connection settings
        """
        self.name = name
        self.source = source

    def validate_connection(self, timeout: Optional[int] = None):
        """
        Open a connection and ping the database.

        Args:
            timeout: Connect timeout in seconds (default: Settings.DB_CONNECT_TIMEOUT)

        Raises:
            SourceConnectionError: If the database cannot be reached
        """
        timeout = timeout or Settings.DB_CONNECT_TIMEOUT
        url = URL.create(
            self.sqlalchemy_driver,
            username=self.source.user,
            password=self.source.password,
            host=self.source.host,
            port=self.source.port,
            database=self.source.database_name
        )

        try:
            engine = create_engine(url, poolclass=NullPool, connect_args=self._connect_args(timeout))
        except Exception as e:
            raise SourceConnectionError(f"Failed to create database engine for {self.name!r}: {e}")

        try:
            with engine.connect() as connection:
                connection.execute(text('SELECT 1'))
        except Exception as e:
            raise SourceConnectionError(
                f"Failed to ping database {self.source.database_name!r} "
                f"({self.source.host}:{self.source.port}): {e}"
            )
        finally:
            engine.dispose()

    def dump(self, working_dir: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Dump the database into the working directory.

        Args:
            working_dir: Job working directory
            cancellation_check: Optional function polled while the dump runs

        Returns:
            Path of the dump file

        Raises:
            DumpError: If the dump utility fails
            BackupCancelled: If cancellation was requested while dumping
        """
        output_path = self._reserve_output_path(working_dir)

        try:
            self._run_dump(output_path, cancellation_check)
        except BaseException:
            # Never leave a half-written dump in the archive
            if os.path.exists(output_path):
                try:
                    os.remove(output_path)
                except OSError:
                    pass
            raise

        return output_path

    def generate_dump_filename(self, now: Optional[datetime] = None) -> str:
        """Format: {source_name}_{YYYYMMDDHHMMSS}{ext}"""
        timestamp = (now or datetime.now()).strftime('%Y%m%d%H%M%S')
        return f"{sanitize_name(self.name)}_{timestamp}{self.file_extension}"

    def _reserve_output_path(self, working_dir: str) -> str:
        """
        Create an empty dump file that no other source of the job can claim.

        Sources whose names sanitize to the same string get a -1, -2, ... suffix.
        """
        filename = self.generate_dump_filename()
        stem = filename[:-len(self.file_extension)]
        candidate = os.path.join(working_dir, filename)
        suffix = 0

        while True:
            try:
                fd = os.open(candidate, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                suffix += 1
                candidate = os.path.join(working_dir, f"{stem}-{suffix}{self.file_extension}")
            except OSError as e:
                raise DumpError(f"Failed to create dump file for {self.name!r} in {working_dir}: {e}")
            else:
                os.close(fd)
                return candidate

    def _dump_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env[self.password_env] = self.source.password
        return env

    def _connect_args(self, timeout: int) -> Dict[str, int]:
        return {'connect_timeout': timeout}

    def _run_dump(self, output_path: str, cancellation_check: Optional[Callable[[], None]]):
        raise NotImplementedError

    def _start_process(self, args: List[str], stdout, stderr) -> subprocess.Popen:
        try:
            return subprocess.Popen(args, env=self._dump_env(), stdout=stdout, stderr=stderr)
        except OSError as e:
            raise DumpError(f"Failed to start {args[0]} for {self.name!r}: {e}")

    def _wait(self, process: subprocess.Popen, cancellation_check: Optional[Callable[[], None]]):
        if cancellation_check is None:
            process.wait()
            return

        while True:
            try:
                process.wait(timeout=Settings.PROCESS_POLL_INTERVAL)
                return
            except subprocess.TimeoutExpired:
                try:
                    cancellation_check()
                except BackupCancelled:
                    _kill(process)
                    raise

    def __repr__(self):
        return f'<{self.__class__.__name__} {self.name}>'


class PostgresDumper(DatabaseDumper):
    """Handler for PostgreSQL sources."""

    sqlalchemy_driver = 'postgresql+psycopg2'
    file_extension = '.pgdump'
    password_env = 'PGPASSWORD'

    def build_command(self, output_path: str) -> List[str]:
        return [
            'pg_dump',
            '-h', self.source.host,
            '-p', str(self.source.port),
            '-U', self.source.user,
            '-F', 'c',  # custom format (compressed)
            '-b',  # include large objects
            '-v',
            '-f', output_path,
            self.source.database_name,
        ]

    def _run_dump(self, output_path: str, cancellation_check: Optional[Callable[[], None]]):
        with tempfile.TemporaryFile() as output_file:
            process = self._start_process(
                self.build_command(output_path),
                stdout=output_file,
                stderr=subprocess.STDOUT
            )
            self._wait(process, cancellation_check)

            if process.returncode != 0:
                output_file.seek(0)
                output = output_file.read().decode('utf-8', errors='replace').strip()
                raise DumpError(
                    f"pg_dump failed for {self.name!r} (exit code {process.returncode}): {output}"
                )


class MySQLDumper(DatabaseDumper):
    """Handler for MySQL sources."""

    sqlalchemy_driver = 'mysql+pymysql'
    file_extension = '.sql.gz'
    password_env = 'MYSQL_PWD'

    # 1MB read buffer for streaming into gzip
    chunk_size = 1024 * 1024

    def build_command(self) -> List[str]:
        return [
            'mysqldump',
            '-h', self.source.host,
            f'-P{self.source.port}',
            f'-u{self.source.user}',
            '--single-transaction',  # consistent InnoDB snapshot
            '--quick',
            self.source.database_name,
        ]

    def _connect_args(self, timeout: int) -> Dict[str, int]:
        return {'connect_timeout': timeout, 'read_timeout': timeout}

    def _run_dump(self, output_path: str, cancellation_check: Optional[Callable[[], None]]):
        with tempfile.TemporaryFile() as stderr_file:
            process = self._start_process(
                self.build_command(),
                stdout=subprocess.PIPE,
                stderr=stderr_file
            )

            try:
                with gzip.open(output_path, 'wb') as gz:
                    while True:
                        if cancellation_check:
                            cancellation_check()
                        chunk = process.stdout.read(self.chunk_size)
                        if not chunk:
                            break
                        gz.write(chunk)
            except BackupCancelled:
                _kill(process)
                raise
            except OSError as e:
                _kill(process)
                raise DumpError(f"Failed to write MySQL dump for {self.name!r} to {output_path}: {e}")
            finally:
                process.stdout.close()

            self._wait(process, cancellation_check)

            if process.returncode != 0:
                stderr_file.seek(0)
                output = stderr_file.read().decode('utf-8', errors='replace').strip()
                raise DumpError(
                    f"mysqldump failed for {self.name!r} (exit code {process.returncode}): {output}"
                )


class DirectoryCopier:
    """
    Handler for local directory sources.

    Copies the whole tree, empty directories included, to
    {working_dir}/{source_name}, or {source_name}-N when another source of
    the job already took that name.
    """

    def __init__(self, name: str, source: DirectorySource):
        """
        Initialize directory copier.

        Args:
            name: Source name from the manifest
            source: Directory settings
        """
        self.name = name
        self.source = source

    def acquire(self, working_dir: str) -> str:
        """
        Copy the source directory into the working directory.

        Args:
            working_dir: Job working directory

        Returns:
            Path of the copy inside working_dir

        Raises:
            DumpError: If the directory cannot be copied
        """
        source_path = Path(self.source.path).expanduser().resolve()

        if not source_path.is_dir():
            raise DumpError(f"Directory does not exist: {self.source.path}")

        base_name = sanitize_name(self.name)
        dest_path = Path(working_dir) / base_name
        suffix = 0
        while dest_path.exists():
            suffix += 1
            dest_path = Path(working_dir) / f"{base_name}-{suffix}"

        try:
            shutil.copytree(source_path, dest_path, symlinks=False)
        except PermissionError as e:
            raise DumpError(f"Permission denied accessing {self.source.path}: {e}")
        except Exception as e:
            raise DumpError(f"Failed to copy {self.source.path}: {e}")

        return str(dest_path)

    def __repr__(self):
        return f'<DirectoryCopier {self.name}>'


DUMPERS = {
    DatabaseDriver.POSTGRES: PostgresDumper,
    DatabaseDriver.MYSQL: MySQLDumper,
}


def create_database_dumper(name: str, source: DatabaseSource) -> DatabaseDumper:
    """
    Factory function to create the dumper for a database's driver.

    Args:
        name: Source name from the manifest
        source: Database settings

    Returns:
        PostgresDumper or MySQLDumper instance
    """
    return DUMPERS[source.driver](name, source)


def create_directory_copier(name: str, source: DirectorySource) -> DirectoryCopier:
    return DirectoryCopier(name, source)


def _kill(process: subprocess.Popen):
    try:
        process.kill()
    except OSError:
        pass
    process.wait()
