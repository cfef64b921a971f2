"""Object storage capability (put/get/head/delete) and its boto3-backed implementation."""

import threading
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, Dict, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from boto3.exceptions import S3UploadFailedError

from common.exceptions import ArchiveError, StorageError, TransientStorageError
from common.logging_config import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]

NOT_FOUND_CODES = frozenset({'404', 'NoSuchKey', 'NotFound'})
TRANSIENT_CODES = frozenset({
    'SlowDown',
    'Throttling',
    'ThrottlingException',
    'RequestTimeout',
    'RequestTimeTooSkewed',
    'InternalError',
    'ServiceUnavailable',
})
TRANSIENT_BOTO_ERRORS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


class ObjectStore(ABC):
    """
    Minimal capability over a single bucket.

    get/head return None for an absent object; every other failure raises
    StorageError (TransientStorageError when a later attempt may succeed).
    """

    @abstractmethod
    def put(self, key: str, stream: BinaryIO, progress: Optional[ProgressCallback] = None) -> None:
        """
        Stream an object to storage, overwriting any previous object at key.

        Args:
            key: Object key inside the bucket
            stream: Readable binary stream, read until EOF
            progress: Optional callback receiving the cumulative bytes sent
        """

    @abstractmethod
    def get(self, key: str) -> Optional[BinaryIO]:
        """Open an object for streaming reads, or None if it does not exist."""

    @abstractmethod
    def head(self, key: str) -> Optional[int]:
        """Return the object's size in bytes, or None if it does not exist."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove an object. Removing an absent object is not an error."""


def _error_code(error: ClientError) -> Tuple[str, int]:
    code = str(error.response.get('Error', {}).get('Code', ''))
    status = int(error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0) or 0)
    return code, status


def _is_not_found(error: ClientError) -> bool:
    code, status = _error_code(error)
    return code in NOT_FOUND_CODES or status == 404


def _translate(error: Exception, action: str, key: str) -> StorageError:
    """Map a boto error onto the cache's storage error types."""
    if isinstance(error, ClientError):
        code, status = _error_code(error)
        message = f"Failed to {action} {key}: {code or status} {error}"
        if code in TRANSIENT_CODES or status >= 500:
            return TransientStorageError(message)
        return StorageError(message)
    if isinstance(error, TRANSIENT_BOTO_ERRORS):
        return TransientStorageError(f"Failed to {action} {key}: {error}")
    return StorageError(f"Failed to {action} {key}: {error}")


class S3ObjectStore(ObjectStore):
    """
    boto3 implementation of ObjectStore bound to one bucket.

    The boto3 client is thread-safe and may be shared between stores.
    """

    def __init__(self, client, bucket: str):
        """
        Initialize store.

        Args:
            client: boto3 S3 client
            bucket: Bucket name
        """
        self.client = client
        self.bucket = bucket

    def put(self, key: str, stream: BinaryIO, progress: Optional[ProgressCallback] = None) -> None:
        callback = None
        if progress is not None:
            sent = 0
            lock = threading.Lock()

            def callback(bytes_amount: int) -> None:
                nonlocal sent
                with lock:
                    sent += bytes_amount
                    total = sent
                progress(total)

        try:
            self.client.upload_fileobj(stream, self.bucket, key, Callback=callback)
        except ArchiveError:
            raise
        except S3UploadFailedError as e:
            raise StorageError(f"Failed to upload {key}: {e}") from e
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, 'upload', key) from e
        logger.debug(f"Uploaded s3://{self.bucket}/{key}")

    def get(self, key: str) -> Optional[BinaryIO]:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise _translate(e, 'download', key) from e
        except BotoCoreError as e:
            raise _translate(e, 'download', key) from e
        return response['Body']

    def head(self, key: str) -> Optional[int]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise _translate(e, 'inspect', key) from e
        except BotoCoreError as e:
            raise _translate(e, 'inspect', key) from e
        return int(response.get('ContentLength', 0))

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return
            raise _translate(e, 'delete', key) from e
        except BotoCoreError as e:
            raise _translate(e, 'delete', key) from e
        logger.debug(f"Deleted s3://{self.bucket}/{key}")


def create_s3_client(
    region: Optional[str] = None,
    profile: Optional[str] = None,
    endpoint_url: Optional[str] = None,
    max_pool_connections: int = 10,
    credentials: Optional[Dict[str, str]] = None
):
    """
    Create a boto3 S3 client.

    Without explicit credentials the default provider chain is used
    (environment, shared config/profile, instance metadata).

    Args:
        region: AWS region, or None for default resolution
        profile: Named profile from the shared AWS config
        endpoint_url: Custom endpoint for S3-compatible storage
        max_pool_connections: HTTP connection pool size, sized to the
            transfer concurrency so parallel transfers do not wait on sockets
        credentials: Environment-style entries (AWS_ACCESS_KEY_ID,
            AWS_SECRET_ACCESS_KEY, AWS_SESSION_TOKEN) from a credentials provider
    """
    session_args = {'profile_name': profile}
    if credentials:
        session_args.update({
            'aws_access_key_id': credentials.get('AWS_ACCESS_KEY_ID'),
            'aws_secret_access_key': credentials.get('AWS_SECRET_ACCESS_KEY'),
            'aws_session_token': credentials.get('AWS_SESSION_TOKEN'),
        })
    session = boto3.session.Session(**{k: v for k, v in session_args.items() if v})
    client_args = {
        'region_name': region,
        'endpoint_url': endpoint_url,
    }
    return session.client(
        's3',
        config=BotoConfig(max_pool_connections=max_pool_connections),
        **{k: v for k, v in client_args.items() if v}
    )


def parse_object_path(object_path: str, default_bucket: Optional[str] = None) -> Tuple[str, str]:
    """
    Split an object path into bucket and key.

    Accepts "s3://bucket/key" or a bare key that lives in default_bucket.

    Raises:
        ValueError: If the path is malformed or no bucket can be determined
    """
    if object_path.startswith('s3://'):
        without_prefix = object_path[len('s3://'):]
        bucket, _, key = without_prefix.partition('/')
        if not bucket or not key:
            raise ValueError(f"Invalid s3 path, missing bucket or key: {object_path}")
        return bucket, key

    key = object_path.lstrip('/')
    if not key:
        raise ValueError(f"Invalid object path: {object_path!r}")
    if not default_bucket:
        raise ValueError(f"No bucket configured for object path: {object_path}")
    return default_bucket, key
