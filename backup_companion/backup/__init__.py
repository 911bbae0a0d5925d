"""
Backup module for Backup Companion.

This module handles the core backup functionality including:
- Source dumping (PostgreSQL, MySQL, local directories)
- Compression
- Storage (S3 and MinIO)
- Execution orchestration
"""

from .executor import BackupExecutor, run_all_jobs, execute_backup_job_by_name
from .sources import PostgresDumper, MySQLDumper, DirectoryCopier
from .compression import create_archive
from .storage import S3Storage

__all__ = [
    'BackupExecutor',
    'run_all_jobs',
    'execute_backup_job_by_name',
    'PostgresDumper',
    'MySQLDumper',
    'DirectoryCopier',
    'create_archive',
    'S3Storage'
]
