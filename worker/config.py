"""Configuration for the transfer worker process, passed as one JSON blob."""

import json
import os
from dataclasses import dataclass
from typing import Optional

from common.constants import (
    DEFAULT_MAX_DOWNLOAD_CONCURRENCY,
    DEFAULT_MAX_UPLOAD_CONCURRENCY,
    WORKER_CONFIG_ENV_VAR,
)


class InvalidWorkerConfigError(ValueError):
    """Raised when the worker configuration blob is missing or unusable."""
    pass


@dataclass(frozen=True)
class WorkerConfig:
    """
    Startup configuration of a transfer worker.

    Credentials are never part of the blob: profile only names an entry of
    the shared AWS config, and secrets reach the process through its
    environment.
    """
    endpoint_address: str
    bucket: str
    max_download_concurrency: int = DEFAULT_MAX_DOWNLOAD_CONCURRENCY
    max_upload_concurrency: int = DEFAULT_MAX_UPLOAD_CONCURRENCY
    region: Optional[str] = None
    profile: Optional[str] = None
    endpoint_url: Optional[str] = None
    log_level: str = "INFO"

    def validate(self) -> None:
        """
        Raises:
            InvalidWorkerConfigError: If a field is out of range
        """
        if not self.endpoint_address:
            raise InvalidWorkerConfigError("endpointAddress is required")
        if not self.bucket:
            raise InvalidWorkerConfigError("bucket is required")
        if self.max_download_concurrency <= 0 or self.max_upload_concurrency <= 0:
            raise InvalidWorkerConfigError("concurrency limits must be positive")

    def to_json(self) -> str:
        """Serialize to a JSON string."""
        return json.dumps({
            'endpointAddress': self.endpoint_address,
            'bucket': self.bucket,
            'maxDownloadConcurrency': self.max_download_concurrency,
            'maxUploadConcurrency': self.max_upload_concurrency,
            'region': self.region,
            'profile': self.profile,
            'endpointUrl': self.endpoint_url,
            'logLevel': self.log_level
        })

    @classmethod
    def from_json(cls, data: str) -> 'WorkerConfig':
        """
        Deserialize and validate.

        Raises:
            InvalidWorkerConfigError: If the blob is not valid JSON or fails validation
        """
        try:
            obj = json.loads(data)
            config = cls(
                endpoint_address=obj['endpointAddress'],
                bucket=obj['bucket'],
                max_download_concurrency=int(obj.get('maxDownloadConcurrency', DEFAULT_MAX_DOWNLOAD_CONCURRENCY)),
                max_upload_concurrency=int(obj.get('maxUploadConcurrency', DEFAULT_MAX_UPLOAD_CONCURRENCY)),
                region=obj.get('region'),
                profile=obj.get('profile'),
                endpoint_url=obj.get('endpointUrl'),
                log_level=obj.get('logLevel') or 'INFO'
            )
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidWorkerConfigError(f"failed to parse configuration: {e}") from e
        config.validate()
        return config

    @classmethod
    def from_env(cls) -> 'WorkerConfig':
        """
        Load from the worker config environment variable.

        Raises:
            InvalidWorkerConfigError: If the variable is not set or invalid
        """
        data = os.environ.get(WORKER_CONFIG_ENV_VAR)
        if not data:
            raise InvalidWorkerConfigError(f"{WORKER_CONFIG_ENV_VAR} environment variable is not set")
        return cls.from_json(data)
