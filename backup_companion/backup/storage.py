"""
Object storage handlers for backup archives.

Supports:
- AWS S3
- MinIO and other S3-compatible stores (custom endpoint, path-style addressing)
"""

import os
from typing import Callable, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from ..models import Destination, StorageProvider
from ..settings import Settings


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class S3Storage:
    """
    Handler for uploading backups to an S3-compatible bucket.

    Archives are stored under the key given by the caller; no prefix is added.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        region: Optional[str] = 'us-east-1',
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3-compatible stores (enables path-style addressing)
        """
        self.bucket_name = bucket_name
        self.region = region or 'us-east-1'
        self.endpoint_url = endpoint_url

        client_config = BotoConfig(
            connect_timeout=Settings.S3_CONNECT_TIMEOUT,
            read_timeout=Settings.S3_READ_TIMEOUT,
            retries={'max_attempts': 2},
            s3={'addressing_style': 'path'} if endpoint_url else None
        )

        try:
            # One session per handler; the default session is not safe to share between job threads
            session = boto3.session.Session()
            self.s3_client = session.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=self.region,
                endpoint_url=endpoint_url,
                config=client_config
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload(self, local_path: str, object_key: str, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        """
        Upload archive to the bucket.

        Args:
            local_path: Path to local archive file
            object_key: Key to store the object under
            cancellation_check: Optional function to call periodically to check if operation should be cancelled

        Returns:
            Object key of uploaded file

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > Settings.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, object_key, cancellation_check)
            else:
                # Check for cancellation before simple upload
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, object_key)

            return object_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(
                f"Upload of {object_key!r} to bucket {self.bucket_name!r} failed ({error_code}): {e}"
            )
        except BotoCoreError as e:
            raise StorageError(f"Upload of {object_key!r} to bucket {self.bucket_name!r} failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

    def _simple_upload(self, local_path: str, object_key: str):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            object_key: Object key
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=object_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, object_key: str, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Upload large file using multipart upload with cancellation support.

        Args:
            local_path: Path to local file
            object_key: Object key
            cancellation_check: Optional function to call between chunks to check for cancellation
        """
        chunk_size = Settings.MULTIPART_CHUNK_SIZE

        # Initiate multipart upload
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=object_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    # Check for cancellation before each chunk
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=object_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=object_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            # Abort multipart upload on error or cancellation
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=object_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def test_connection(self) -> bool:
        """
        Test connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            # Try to head the bucket
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code in ('403', 'AccessDenied'):
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"Connection test for bucket {self.bucket_name!r} failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to bucket {self.bucket_name!r}: {e}")

    def __repr__(self):
        endpoint = self.endpoint_url or f"s3.{self.region}"
        return f'<S3Storage bucket={self.bucket_name} endpoint={endpoint}>'


def create_storage(destination: Destination) -> S3Storage:
    """
    Factory function to create the storage handler for a destination.

    Args:
        destination: Destination settings

    Returns:
        S3Storage configured for the destination's provider

    Raises:
        StorageError: If the client cannot be created
    """
    if destination.provider not in (StorageProvider.S3, StorageProvider.MINIO):
        raise StorageError(f"Unsupported storage provider: {destination.provider}")

    # MinIO differs from S3 only by its endpoint, which switches on path-style addressing
    return S3Storage(
        access_key=destination.access_key_id,
        secret_key=destination.secret_access_key,
        bucket_name=destination.bucket_name,
        region=destination.region,
        endpoint_url=destination.endpoint_url
    )
