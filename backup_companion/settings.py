import os


class Settings:
    """Ambient settings read from the environment"""

    # Manifest
    CONFIG_PATH = os.environ.get('BACKUP_COMPANION_CONFIG') or 'config.yaml'

    # Logging
    LOG_LEVEL = os.environ.get('BACKUP_COMPANION_LOG_LEVEL') or 'info'
    LOG_FILE = os.environ.get('BACKUP_COMPANION_LOG_FILE') or None

    # Database connectivity probe
    DB_CONNECT_TIMEOUT = int(os.environ.get('DB_CONNECT_TIMEOUT', 5))

    # Object storage
    S3_CONNECT_TIMEOUT = int(os.environ.get('S3_CONNECT_TIMEOUT', 5))
    S3_READ_TIMEOUT = int(os.environ.get('S3_READ_TIMEOUT', 60))
    MULTIPART_THRESHOLD = int(os.environ.get('MULTIPART_THRESHOLD', 100 * 1024 * 1024))  # 100MB
    MULTIPART_CHUNK_SIZE = int(os.environ.get('MULTIPART_CHUNK_SIZE', 10 * 1024 * 1024))  # 10MB

    # Seconds between cancellation checks while a dump process runs
    PROCESS_POLL_INTERVAL = 1
