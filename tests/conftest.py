"""
Shared pytest fixtures for Backup Companion tests.

This module provides fixtures for:
- Source directory trees
- Manifest data and loaded Configuration objects
- Mock fixtures for external services (S3 via moto, database dumpers)
"""

import logging
import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
import yaml
from moto import mock_aws

from backup_companion import LOGGER_NAME
from backup_companion.models import (
    Configuration,
    DatabaseDriver,
    DatabaseSource,
    Destination,
    DirectorySource,
    Job,
    OutputSpec,
    Sources,
    StorageProvider,
)


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Drop handlers installed by CLI tests so later tests don't log to closed streams."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a directory tree to back up.

    Creates:
    - index.html
    - assets/app.js
    - assets/img/logo.png
    - empty/ (no files)
    """
    root = tmp_path / 'www'
    root.mkdir()
    (root / 'index.html').write_text('<h1>hello</h1>')

    assets = root / 'assets'
    assets.mkdir()
    (assets / 'app.js').write_text('console.log("hi");')

    img = assets / 'img'
    img.mkdir()
    (img / 'logo.png').write_bytes(b'\x89PNG\r\n\x1a\n' + bytes(range(256)))

    (root / 'empty').mkdir()

    return root


@pytest.fixture
def output_dir(tmp_path):
    """Directory the jobs write their working files into."""
    path = tmp_path / 'output'
    path.mkdir()
    return path


@pytest.fixture
def orders_source():
    return DatabaseSource(
        driver=DatabaseDriver.POSTGRES,
        host='db.internal',
        port=5432,
        user='backup',
        password='s3cret',
        database_name='orders'
    )


@pytest.fixture
def sample_config(source_tree, output_dir, orders_source):
    """
    Configuration with:
    - postgres database 'orders' and directory 'www'
    - destinations 'primary' and 'secondary' (buckets of the same name)
    - job 'nightly' (orders -> primary), job 'files' (www -> primary, secondary)
    """
    return Configuration(
        sources=Sources(
            databases={'orders': orders_source},
            directories={'www': DirectorySource(path=str(source_tree))}
        ),
        destinations={
            'primary': Destination(
                provider=StorageProvider.S3,
                bucket_name='primary',
                access_key_id='test_access_key',
                secret_access_key='test_secret_key',
                region='us-east-1'
            ),
            'secondary': Destination(
                provider=StorageProvider.S3,
                bucket_name='secondary',
                access_key_id='test_access_key',
                secret_access_key='test_secret_key',
                region='us-east-1'
            ),
        },
        jobs={
            'nightly': Job(
                output=OutputSpec(dir=str(output_dir), name='nightly'),
                databases=('orders',),
                destinations=('primary',)
            ),
            'files': Job(
                output=OutputSpec(dir=str(output_dir), name='files'),
                directories=('www',),
                destinations=('primary', 'secondary')
            ),
        }
    )


@pytest.fixture
def config_data(source_tree, output_dir):
    """Decoded manifest equivalent to sample_config."""
    return {
        'sources': {
            'databases': {
                'orders': {
                    'driver': 'postgres',
                    'host': 'db.internal',
                    'port': 5432,
                    'user': 'backup',
                    'password': 's3cret',
                    'name': 'orders',
                },
            },
            'directories': {
                'www': {'path': str(source_tree)},
            },
        },
        'destinations': {
            'primary': {
                'provider': 's3',
                'bucketName': 'primary',
                'accessKeyId': 'test_access_key',
                'secretAccessKey': 'test_secret_key',
                'region': 'us-east-1',
            },
            'offsite': {
                'provider': 'minio',
                'bucketName': 'backups',
                'accessKeyId': 'minio',
                'secretAccessKey': 'minio123',
                'endpointUrl': 'http://localhost:9000',
            },
        },
        'jobs': {
            'nightly': {
                'output': {'dir': str(output_dir), 'name': 'nightly'},
                'databases': ['orders'],
                'destinations': ['primary'],
            },
            'files': {
                'output': {'dir': str(output_dir), 'name': 'files'},
                'directories': ['www'],
                'destinations': ['primary', 'offsite'],
            },
        },
    }


@pytest.fixture
def config_file(tmp_path, config_data):
    """Write config_data to a YAML file and return its path."""
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(config_data))
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates buckets 'primary' and 'secondary' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='primary')
        s3.create_bucket(Bucket='secondary')

        yield s3


@pytest.fixture
def mock_dumper():
    """
    Replace the database dumper used by the executor.

    The connectivity probe succeeds and dump() writes a small fake pg_dump
    file into the working directory.
    """
    with patch('backup_companion.backup.executor.create_database_dumper') as factory:
        dumper = MagicMock()
        dumper.source.driver = DatabaseDriver.POSTGRES

        def fake_dump(working_dir, cancellation_check=None):
            path = os.path.join(working_dir, 'orders_20240115120000.pgdump')
            with open(path, 'wb') as f:
                f.write(b'PGDMP fake dump')
            return path

        dumper.dump.side_effect = fake_dump
        factory.return_value = dumper

        yield dumper
