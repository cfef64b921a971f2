"""Typed configuration for the artifact cache on the control-process side."""

import os
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from common.constants import (
    DEFAULT_CHUNK_COUNT,
    DEFAULT_MAX_DOWNLOAD_CONCURRENCY,
    DEFAULT_MAX_UPLOAD_CONCURRENCY,
    WORKER_PING_INTERVAL_SECONDS,
    WORKER_STARTUP_TIMEOUT_SECONDS,
)
from worker.config import WorkerConfig

CredentialsProvider = Callable[[], Dict[str, str]]


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class CacheConfig:
    """
    Cache settings passed explicitly at construction.

    Attributes:
        bucket: Bucket holding every cache object
        region: AWS region, None for default resolution
        profile: Named AWS profile the worker should use
        endpoint_url: Endpoint for S3-compatible storage
        chunk_count: Upper bound of parallel bulk chunks
        max_download_concurrency: Worker download slots
        max_upload_concurrency: Worker upload slots
        startup_timeout: Seconds to wait for the worker's first Ping
        ping_interval: Seconds between readiness probes
        archives_dir: Directory holding package archives for bulk mode
        cache_key_parts: Joined with '-' into the bulk cache key
        compress: Gzip single-object archives before upload
        should_fetch: Restore from the cache
        should_upload: Publish to the cache
        credentials_provider: Returns environment entries (e.g. AWS keys)
            for the worker process
        worker_command: Command spawning the worker, defaults to this
            interpreter running worker.main
        log_level: Log level forwarded to the worker
    """
    bucket: str
    region: Optional[str] = None
    profile: Optional[str] = None
    endpoint_url: Optional[str] = None
    chunk_count: int = DEFAULT_CHUNK_COUNT
    max_download_concurrency: int = DEFAULT_MAX_DOWNLOAD_CONCURRENCY
    max_upload_concurrency: int = DEFAULT_MAX_UPLOAD_CONCURRENCY
    startup_timeout: float = WORKER_STARTUP_TIMEOUT_SECONDS
    ping_interval: float = WORKER_PING_INTERVAL_SECONDS
    archives_dir: Optional[str] = None
    cache_key_parts: List[str] = field(default_factory=list)
    compress: bool = False
    should_fetch: bool = True
    should_upload: bool = True
    credentials_provider: Optional[CredentialsProvider] = None
    worker_command: Optional[Sequence[str]] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.bucket:
            raise ValueError("bucket is required")
        if self.chunk_count < 1:
            raise ValueError("chunk_count must be at least 1")
        if self.max_download_concurrency < 1 or self.max_upload_concurrency < 1:
            raise ValueError("concurrency limits must be positive")

    def cache_key(self) -> str:
        """Bulk cache key, e.g. 'my-project-0'."""
        return '-'.join(self.cache_key_parts)

    def command(self) -> List[str]:
        if self.worker_command:
            return list(self.worker_command)
        return [sys.executable, '-m', 'worker.main']

    def worker_config(self, endpoint_address: str) -> WorkerConfig:
        """Worker startup configuration for a given socket path."""
        return WorkerConfig(
            endpoint_address=endpoint_address,
            bucket=self.bucket,
            max_download_concurrency=self.max_download_concurrency,
            max_upload_concurrency=self.max_upload_concurrency,
            region=self.region,
            profile=self.profile,
            endpoint_url=self.endpoint_url,
            log_level=self.log_level
        )

    @classmethod
    def from_env(cls, **overrides) -> 'CacheConfig':
        """
        Build from S3_CACHE_* environment variables.

        Raises:
            ValueError: If S3_CACHE_BUCKET is unset or a number is malformed
        """
        values = {
            'bucket': os.environ.get('S3_CACHE_BUCKET', ''),
            'region': os.environ.get('S3_CACHE_REGION') or None,
            'profile': os.environ.get('S3_CACHE_PROFILE') or None,
            'endpoint_url': os.environ.get('S3_CACHE_ENDPOINT_URL') or None,
            'chunk_count': int(os.environ.get('S3_CACHE_CHUNK_COUNT', DEFAULT_CHUNK_COUNT)),
            'max_download_concurrency': int(os.environ.get(
                'S3_CACHE_MAX_DOWNLOAD_CONCURRENCY', DEFAULT_MAX_DOWNLOAD_CONCURRENCY)),
            'max_upload_concurrency': int(os.environ.get(
                'S3_CACHE_MAX_UPLOAD_CONCURRENCY', DEFAULT_MAX_UPLOAD_CONCURRENCY)),
            'should_fetch': _env_bool('S3_CACHE_SHOULD_FETCH', True),
            'should_upload': _env_bool('S3_CACHE_SHOULD_UPLOAD', True),
            'compress': _env_bool('S3_CACHE_COMPRESS', False),
            'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        }
        values.update(overrides)
        return cls(**values)
