"""
Storage backends for backup archives.

Every backend implements the same object store contract (BaseStorage):
store, retrieve, list, delete and exists. A backup is persisted as two
objects sharing a key:

    <id>.tar.gz   archive data (possibly encrypted)
    <id>.json     BackupMetadata

Supports:
- LocalStorage: Store in local directory
- S3Storage: AWS S3 and S3-compatible services
- GCSStorage: Google Cloud Storage
"""

import io
import os
import json
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError
from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage as gcs
from google.oauth2 import service_account

from dvom.config import StorageConfig, StorageKind
from dvom.models import Backup, BackupMetadata


logger = logging.getLogger(__name__)

DATA_SUFFIX = '.tar.gz'
METADATA_SUFFIX = '.json'

COPY_CHUNK_SIZE = 64 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class BackupNotFoundError(StorageError):
    """Raised when a backup's metadata or data object does not exist."""
    pass


def _encode_metadata(metadata: BackupMetadata) -> bytes:
    return json.dumps(metadata.to_dict(), indent=2).encode()


def _decode_metadata(raw: bytes, source: str) -> BackupMetadata:
    try:
        return BackupMetadata.from_dict(json.loads(raw))
    except (ValueError, TypeError) as e:
        raise StorageError(f"Failed to decode metadata {source}: {e}")


class BaseStorage(ABC):
    """Object store contract shared by all backends."""

    @abstractmethod
    def store(self, backup_id: str, metadata: BackupMetadata, data: BinaryIO):
        """
        Persist a backup's data and metadata under backup_id.

        Args:
            backup_id: Object key (without suffix)
            metadata: Metadata record to persist
            data: Readable stream, consumed to EOF (not closed)

        Raises:
            StorageError: If either object cannot be written
        """

    @abstractmethod
    def retrieve(self, backup_id: str) -> Backup:
        """
        Open a stored backup.

        Returns:
            Backup whose data stream the caller must close

        Raises:
            BackupNotFoundError: If metadata or data is missing
            StorageError: On backend failure
        """

    @abstractmethod
    def list(self) -> List[BackupMetadata]:
        """Return metadata for every stored backup."""

    @abstractmethod
    def delete(self, backup_id: str):
        """Delete a backup. Deleting a missing backup is not an error."""

    @abstractmethod
    def exists(self, backup_id: str) -> bool:
        """Check whether a backup's metadata object exists."""

    def close(self):
        """Release client resources."""


class LocalStorage(BaseStorage):
    """
    Handler for storing backups in a local directory.

    Data and metadata are written to temporary files and renamed into place,
    so a failed store never leaves a partial backup behind.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Base directory for local backups
        """
        if not base_path:
            raise StorageError("Base path is required for local storage")

        self.base_path = Path(base_path)

        # Create base directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def _path(self, backup_id: str, suffix: str) -> Path:
        if not backup_id or '/' in backup_id or '\\' in backup_id or backup_id in ('.', '..'):
            raise StorageError(f"Invalid backup id: {backup_id!r}")
        return self.base_path / f"{backup_id}{suffix}"

    def store(self, backup_id: str, metadata: BackupMetadata, data: BinaryIO):
        data_path = self._path(backup_id, DATA_SUFFIX)
        metadata_path = self._path(backup_id, METADATA_SUFFIX)

        temp_paths = []
        committed = []

        try:
            # Write data
            fd, temp_data = tempfile.mkstemp(prefix=f".{backup_id}.", suffix='.partial', dir=self.base_path)
            temp_paths.append(temp_data)
            with os.fdopen(fd, 'wb') as f:
                while True:
                    chunk = data.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)

            # Write metadata
            fd, temp_meta = tempfile.mkstemp(prefix=f".{backup_id}.", suffix='.partial', dir=self.base_path)
            temp_paths.append(temp_meta)
            with os.fdopen(fd, 'wb') as f:
                f.write(_encode_metadata(metadata))

            # Commit: data first, metadata last (exists() keys off the metadata)
            os.replace(temp_data, data_path)
            committed.append(data_path)
            os.replace(temp_meta, metadata_path)
            committed.append(metadata_path)

        except Exception as e:
            for path in temp_paths + committed:
                try:
                    if os.path.exists(path):
                        os.remove(path)
                except OSError as cleanup_error:
                    logger.warning(f"Warning: failed to remove partial file {path}: {cleanup_error}")

            if isinstance(e, StorageError):
                raise
            if isinstance(e, PermissionError):
                raise StorageError(f"Permission denied writing to {self.base_path}: {e}")
            raise StorageError(f"Failed to store backup {backup_id}: {e}") from e

    def retrieve(self, backup_id: str) -> Backup:
        data_path = self._path(backup_id, DATA_SUFFIX)
        metadata_path = self._path(backup_id, METADATA_SUFFIX)

        if not metadata_path.exists() or not data_path.exists():
            raise BackupNotFoundError(f"Backup not found: {backup_id}")

        try:
            metadata = _decode_metadata(metadata_path.read_bytes(), str(metadata_path))
            data = open(data_path, 'rb')
        except FileNotFoundError:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        except OSError as e:
            raise StorageError(f"Failed to open backup {backup_id}: {e}")

        return Backup(id=backup_id, metadata=metadata, data=data)

    def list(self) -> List[BackupMetadata]:
        try:
            metadata_files = sorted(self.base_path.glob(f"*{METADATA_SUFFIX}"))
        except OSError as e:
            raise StorageError(f"Failed to read backup directory: {e}")

        backups = []
        for path in metadata_files:
            if path.name.startswith('.'):
                continue
            try:
                backups.append(_decode_metadata(path.read_bytes(), str(path)))
            except (OSError, StorageError) as e:
                logger.warning(f"Skipping unreadable metadata {path.name}: {e}")

        return backups

    def delete(self, backup_id: str):
        for suffix in (DATA_SUFFIX, METADATA_SUFFIX):
            full_path = self._path(backup_id, suffix)
            try:
                if full_path.exists():
                    full_path.unlink()
            except FileNotFoundError:
                pass
            except PermissionError as e:
                raise StorageError(f"Permission denied deleting {full_path}: {e}")
            except OSError as e:
                raise StorageError(f"Failed to delete local file: {e}")

    def exists(self, backup_id: str) -> bool:
        try:
            return self._path(backup_id, METADATA_SUFFIX).exists()
        except OSError as e:
            raise StorageError(f"Failed to check backup existence: {e}")


class S3Storage(BaseStorage):
    """
    Handler for storing backups in AWS S3 (or an S3-compatible endpoint).

    Data is streamed with a single put_object when it fits in one part and
    with a multipart upload otherwise, so memory use is bounded by part_size.
    Data and metadata are two separate objects; metadata is written last.
    """

    # S3 requires every part except the last to be at least 5MB
    MIN_PART_SIZE = 5 * 1024 * 1024

    def __init__(self, bucket_name: str, region: str = 'us-east-1', endpoint: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 part_size: int = 10 * 1024 * 1024, client=None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint: Custom endpoint URL for S3-compatible services
            access_key: AWS access key ID (default credential chain if omitted)
            secret_key: AWS secret access key
            part_size: Multipart upload part size in bytes
            client: Pre-built boto3 S3 client
        """
        if not bucket_name:
            raise StorageError("Bucket name is required for S3 storage")

        self.bucket_name = bucket_name
        self.region = region
        self.part_size = max(part_size, self.MIN_PART_SIZE)

        if client is not None:
            self.s3_client = client
            return

        kwargs = {'region_name': region}
        if access_key and secret_key:
            kwargs['aws_access_key_id'] = access_key
            kwargs['aws_secret_access_key'] = secret_key
        if endpoint:
            kwargs['endpoint_url'] = endpoint
            kwargs['config'] = BotoConfig(s3={'addressing_style': 'path'})

        try:
            self.s3_client = boto3.client('s3', **kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return error.response.get('Error', {}).get('Code', 'Unknown')

    @classmethod
    def _is_not_found(cls, error: ClientError) -> bool:
        return cls._error_code(error) in ('404', 'NoSuchKey', 'NotFound')

    def store(self, backup_id: str, metadata: BackupMetadata, data: BinaryIO,
              cancellation_check: Optional[Callable] = None):
        data_key = backup_id + DATA_SUFFIX
        metadata_key = backup_id + METADATA_SUFFIX

        try:
            self._upload_stream(data, data_key, cancellation_check)

            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=metadata_key,
                Body=_encode_metadata(metadata),
                ContentType='application/json'
            )
        except ClientError as e:
            raise StorageError(f"S3 upload failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")

    def _upload_stream(self, data: BinaryIO, s3_key: str, cancellation_check: Optional[Callable] = None):
        """
        Upload a stream, switching to multipart once it exceeds one part.

        Args:
            data: Readable stream
            s3_key: S3 object key
            cancellation_check: Optional function called between parts
        """
        first = self._read_part(data)

        if len(first) < self.part_size:
            if cancellation_check:
                cancellation_check()
            self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=first)
            return

        self._multipart_upload(data, first, s3_key, cancellation_check)

    def _read_part(self, data: BinaryIO) -> bytes:
        buffer = io.BytesIO()
        while buffer.tell() < self.part_size:
            chunk = data.read(min(COPY_CHUNK_SIZE, self.part_size - buffer.tell()))
            if not chunk:
                break
            buffer.write(chunk)
        return buffer.getvalue()

    def _multipart_upload(self, data: BinaryIO, first: bytes, s3_key: str,
                          cancellation_check: Optional[Callable] = None):
        """
        Upload a large stream using multipart upload with cancellation support.

        Args:
            data: Readable stream positioned after the first part
            first: First part, already read
            s3_key: S3 object key
            cancellation_check: Optional function to call between parts
        """
        # Initiate multipart upload
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1
            chunk = first

            while chunk:
                # Check for cancellation before each part
                if cancellation_check:
                    cancellation_check()

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=chunk
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1
                chunk = self._read_part(data)

            # Complete multipart upload
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except BaseException:
            # Abort multipart upload on error or cancellation
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Warning: failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def retrieve(self, backup_id: str) -> Backup:
        try:
            response = self.s3_client.get_object(
                Bucket=self.bucket_name,
                Key=backup_id + METADATA_SUFFIX
            )
            metadata = _decode_metadata(response['Body'].read(), backup_id + METADATA_SUFFIX)

            response = self.s3_client.get_object(
                Bucket=self.bucket_name,
                Key=backup_id + DATA_SUFFIX
            )
        except ClientError as e:
            if self._is_not_found(e):
                raise BackupNotFoundError(f"Backup not found: {backup_id}")
            raise StorageError(f"S3 download failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download failed: {e}")

        return Backup(id=backup_id, metadata=metadata, data=response['Body'])

    def list(self) -> List[BackupMetadata]:
        try:
            backups = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    if not key.endswith(METADATA_SUFFIX):
                        continue

                    try:
                        response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
                        backups.append(_decode_metadata(response['Body'].read(), key))
                    except ClientError as e:
                        if not self._is_not_found(e):
                            raise
                        logger.warning(f"Metadata object disappeared while listing: {key}")
                    except StorageError as e:
                        logger.warning(f"Skipping unreadable metadata {key}: {e}")

            return backups

        except ClientError as e:
            raise StorageError(f"S3 list failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, backup_id: str):
        try:
            # S3 delete_object succeeds for missing keys
            for suffix in (DATA_SUFFIX, METADATA_SUFFIX):
                self.s3_client.delete_object(
                    Bucket=self.bucket_name,
                    Key=backup_id + suffix
                )
        except ClientError as e:
            raise StorageError(f"S3 delete failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def exists(self, backup_id: str) -> bool:
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=backup_id + METADATA_SUFFIX)
            return True
        except ClientError as e:
            if self._is_not_found(e):
                return False
            raise StorageError(f"S3 existence check failed ({self._error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 existence check failed: {e}")


class GCSStorage(BaseStorage):
    """
    Handler for storing backups in Google Cloud Storage.

    Data is streamed through resumable blob writers; metadata is written last.
    """

    def __init__(self, bucket_name: str, project_id: Optional[str] = None,
                 credentials_file: Optional[str] = None, client=None):
        """
        Initialize GCS storage handler.

        Args:
            bucket_name: GCS bucket name
            project_id: Google Cloud project (default: inferred from credentials)
            credentials_file: Service account JSON key (default: application default credentials)
            client: Pre-built google.cloud.storage.Client
        """
        if not bucket_name:
            raise StorageError("Bucket name is required for GCS storage")

        self.bucket_name = bucket_name
        self.project_id = project_id

        if client is None:
            try:
                if credentials_file:
                    credentials = service_account.Credentials.from_service_account_file(
                        credentials_file,
                        scopes=['https://www.googleapis.com/auth/cloud-platform']
                    )
                    client = gcs.Client(credentials=credentials, project=project_id)
                else:
                    client = gcs.Client(project=project_id)
            except Exception as e:
                raise StorageError(f"Failed to create GCS client: {e}")

        self.client = client
        self.bucket = client.bucket(bucket_name)

    def store(self, backup_id: str, metadata: BackupMetadata, data: BinaryIO):
        try:
            blob = self.bucket.blob(backup_id + DATA_SUFFIX)
            with blob.open('wb') as writer:
                while True:
                    chunk = data.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    writer.write(chunk)

            meta_blob = self.bucket.blob(backup_id + METADATA_SUFFIX)
            meta_blob.upload_from_string(_encode_metadata(metadata), content_type='application/json')
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS upload failed: {e}")

    def retrieve(self, backup_id: str) -> Backup:
        try:
            meta_blob = self.bucket.blob(backup_id + METADATA_SUFFIX)
            metadata = _decode_metadata(meta_blob.download_as_bytes(), backup_id + METADATA_SUFFIX)

            blob = self.bucket.blob(backup_id + DATA_SUFFIX)
            if not blob.exists():
                raise BackupNotFoundError(f"Backup not found: {backup_id}")
            reader = blob.open('rb')
        except gcs_exceptions.NotFound:
            raise BackupNotFoundError(f"Backup not found: {backup_id}")
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"GCS download failed: {e}")

        return Backup(id=backup_id, metadata=metadata, data=reader)

    def list(self) -> List[BackupMetadata]:
        backups = []
        try:
            # list_blobs pages through results transparently
            for blob in self.client.list_blobs(self.bucket_name):
                if not blob.name.endswith(METADATA_SUFFIX):
                    continue
                try:
                    backups.append(_decode_metadata(blob.download_as_bytes(), blob.name))
                except gcs_exceptions.NotFound:
                    logger.warning(f"Metadata object disappeared while listing: {blob.name}")
                except StorageError as e:
                    logger.warning(f"Skipping unreadable metadata {blob.name}: {e}")
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"Failed to list GCS objects: {e}")

        return backups

    def delete(self, backup_id: str):
        for suffix in (DATA_SUFFIX, METADATA_SUFFIX):
            try:
                self.bucket.blob(backup_id + suffix).delete()
            except gcs_exceptions.NotFound:
                pass
            except gcs_exceptions.GoogleAPIError as e:
                raise StorageError(f"Failed to delete {backup_id + suffix} from GCS: {e}")

    def exists(self, backup_id: str) -> bool:
        try:
            return self.bucket.blob(backup_id + METADATA_SUFFIX).exists()
        except gcs_exceptions.GoogleAPIError as e:
            raise StorageError(f"Failed to check backup existence: {e}")

    def close(self):
        self.client.close()


def _create_local(config: StorageConfig) -> BaseStorage:
    return LocalStorage(config.base_path)


def _create_s3(config: StorageConfig) -> BaseStorage:
    if not config.s3_bucket:
        raise StorageError("S3 bucket is required when using S3 storage")
    return S3Storage(
        bucket_name=config.s3_bucket,
        region=config.s3_region,
        endpoint=config.s3_endpoint,
        access_key=config.s3_access_key,
        secret_key=config.s3_secret_key
    )


def _create_gcs(config: StorageConfig) -> BaseStorage:
    if not config.gcs_bucket:
        raise StorageError("GCS bucket is required when using GCS storage")
    return GCSStorage(
        bucket_name=config.gcs_bucket,
        project_id=config.gcs_project,
        credentials_file=config.gcs_credentials
    )


# One constructor per StorageKind
BACKENDS: Dict[StorageKind, Callable[[StorageConfig], BaseStorage]] = {
    StorageKind.LOCAL: _create_local,
    StorageKind.S3: _create_s3,
    StorageKind.GCS: _create_gcs,
}


def create_storage(config: StorageConfig) -> BaseStorage:
    """
    Factory function to create the configured storage backend.

    Args:
        config: StorageConfig for this invocation

    Returns:
        BaseStorage implementation

    Raises:
        StorageError: If required settings are missing or the client cannot be created
    """
    try:
        factory = BACKENDS[config.kind]
    except KeyError:
        raise StorageError(f"Unsupported storage type: {config.kind}")
    return factory(config)
