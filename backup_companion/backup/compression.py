"""
Archive handling for backup working directories.

A job's working directory is packed into a single gzip-compressed tar file.
Entry names are relative to the working directory, and directory entries are
written even when a directory is empty.
"""

import os
import tarfile
from datetime import datetime
from typing import Optional


class ArchiveError(Exception):
    """Raised when archive creation fails."""
    pass


ARCHIVE_EXTENSION = '.tar.gz'


def create_archive(source_dir: str, archive_path: str) -> str:
    """
    Create a gzip-compressed tar archive of a directory.

    Args:
        source_dir: Directory whose contents should be archived
        archive_path: Full path of the archive to create

    Returns:
        Path to the created archive file

    Raises:
        ArchiveError: If archive creation fails
    """
    if not os.path.isdir(source_dir):
        raise ArchiveError(f"Source directory does not exist: {source_dir}")

    try:
        with tarfile.open(archive_path, 'w:gz') as tar:
            _add_directory_to_tar(tar, source_dir)
        return archive_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(archive_path):
            try:
                os.remove(archive_path)
            except OSError:
                pass
        raise ArchiveError(f"Failed to create archive {archive_path}: {e}")


def _add_directory_to_tar(tar: tarfile.TarFile, source_dir: str):
    """
    Add every entry below source_dir, using paths relative to it.

    Args:
        tar: Open TarFile object
        source_dir: Directory to walk
    """
    for root, dirs, files in os.walk(source_dir):
        dirs.sort()
        relative_root = os.path.relpath(root, source_dir)

        for name in dirs:
            path = os.path.join(root, name)
            arcname = name if relative_root == '.' else os.path.join(relative_root, name)
            # Directory entry only; walking adds the contents
            tar.add(path, arcname=arcname, recursive=False)

        for name in sorted(files):
            path = os.path.join(root, name)
            arcname = name if relative_root == '.' else os.path.join(relative_root, name)
            tar.add(path, arcname=arcname, recursive=False)


def sanitize_name(name: str) -> str:
    """Replace anything but letters, digits, '-', '_' and '.' with underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in name
    )


def generate_backup_dirname(output_name: str, now: Optional[datetime] = None) -> str:
    """
    Generate the working directory name for a job run.

    Format: {output_name}-{YYYYMMDDHHMMSS}

    Args:
        output_name: Job output name
        now: Timestamp to use (default: current local time)

    Returns:
        Directory name (without path)
    """
    timestamp = (now or datetime.now()).strftime('%Y%m%d%H%M%S')
    return f"{sanitize_name(output_name)}-{timestamp}"


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        ArchiveError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise ArchiveError(f"Archive not found: {archive_path}")
    except Exception as e:
        raise ArchiveError(f"Failed to get archive size: {e}")
