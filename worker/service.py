"""S3Service: Ping/Download/Upload handlers behind two admission-control semaphores."""

import asyncio
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

from common.archive_streams import (
    extract_tar_stream,
    open_upload_stream,
    remove_path,
    write_file_stream,
)
from common.constants import DOWNLOAD_METHOD, PING_METHOD, UPLOAD_METHOD
from common.logging_config import get_logger
from common.protocol import (
    DownloadRequest,
    DownloadResponse,
    PingResponse,
    RpcRequest,
    RpcResponse,
    UploadRequest,
    UploadResponse,
)
from common.storage import ObjectStore, parse_object_path

logger = get_logger(__name__)

StoreFactory = Callable[[str], ObjectStore]


class S3Service:
    """
    Transfer handlers of the worker process.

    Each Download holds a download slot and each Upload an upload slot for
    its whole duration; calls beyond the limit wait for a slot. Blocking
    storage and filesystem work runs on a thread pool sized to both limits.
    A failing call is turned into an error response and never affects other
    calls.
    """

    def __init__(
        self,
        store_factory: StoreFactory,
        default_bucket: Optional[str],
        max_download_concurrency: int,
        max_upload_concurrency: int
    ):
        """
        Initialize service.

        Args:
            store_factory: Returns the ObjectStore for a bucket name
            default_bucket: Bucket used for object paths without s3:// prefix
            max_download_concurrency: Concurrent Download calls allowed
            max_upload_concurrency: Concurrent Upload calls allowed
        """
        self.store_factory = store_factory
        self.default_bucket = default_bucket
        self.max_download_concurrency = max_download_concurrency
        self.max_upload_concurrency = max_upload_concurrency
        self._download_slots = asyncio.Semaphore(max_download_concurrency)
        self._upload_slots = asyncio.Semaphore(max_upload_concurrency)
        self._stores: Dict[str, ObjectStore] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_download_concurrency + max_upload_concurrency,
            thread_name_prefix="transfer"
        )
        self.active_downloads = 0
        self.active_uploads = 0
        self._methods: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            PING_METHOD: self.Ping,
            DOWNLOAD_METHOD: self.Download,
            UPLOAD_METHOD: self.Upload,
        }

    def close(self) -> None:
        """Release the transfer thread pool without waiting for abandoned transfers."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _store(self, bucket: str) -> ObjectStore:
        store = self._stores.get(bucket)
        if store is None:
            store = self.store_factory(bucket)
            self._stores[bucket] = store
        return store

    async def _run_blocking(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def handle(self, request: RpcRequest) -> RpcResponse:
        """
        Dispatch one JSON-RPC request.

        Args:
            request: Decoded request envelope

        Returns:
            Response carrying the request id and either a result or an error
        """
        method = self._methods.get(request.method)
        if method is None:
            logger.warning(f"Unknown RPC method {request.method} [id={request.id}]")
            return RpcResponse(id=request.id, error=f"rpc: can't find method \"{request.method}\"")

        try:
            result = await method(request.first_param)
            return RpcResponse(id=request.id, result=result)
        except Exception as e:
            logger.error(f"{request.method} failed [id={request.id}]: {e}", exc_info=True)
            return RpcResponse(id=request.id, error=str(e) or type(e).__name__)

    async def Ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Liveness probe without side effects."""
        return PingResponse().to_dict()

    async def Download(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Fetch an object into a local file or directory.

        Args:
            params: Wire form of DownloadRequest

        Returns:
            Wire form of DownloadResponse; downloaded=False for a missing
            object or a checksum mismatch
        """
        request = DownloadRequest.from_dict(params)
        async with self._download_slots:
            self.active_downloads += 1
            try:
                response = await self._run_blocking(self._download, request)
            finally:
                self.active_downloads -= 1
        return response.to_dict()

    async def Upload(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store a local file or directory under an object key.

        Args:
            params: Wire form of UploadRequest

        Returns:
            Wire form of UploadResponse; uploaded=False when the key already exists
        """
        request = UploadRequest.from_dict(params)
        async with self._upload_slots:
            self.active_uploads += 1
            try:
                response = await self._run_blocking(self._upload, request)
            finally:
                self.active_uploads -= 1
        return response.to_dict()

    def _download(self, request: DownloadRequest) -> DownloadResponse:
        bucket, key = parse_object_path(request.object_path, self.default_bucket)
        body = self._store(bucket).get(key)
        if body is None:
            logger.debug(f"Cache miss for s3://{bucket}/{key}")
            return DownloadResponse(downloaded=False)

        output = Path(request.output_path)
        output.parent.mkdir(parents=True, exist_ok=True)
        temp = output.with_name(f"{output.name}.{uuid.uuid4().hex}.tmp")

        try:
            if request.untar:
                extract_tar_stream(body, str(temp), decompress=request.decompress)
                _swap_into_place(temp, output)
            else:
                digest = write_file_stream(body, str(temp), decompress=request.decompress)
                if request.expected_checksum and digest != request.expected_checksum:
                    logger.warning(
                        f"Checksum mismatch for s3://{bucket}/{key}: expected "
                        f"{request.expected_checksum}, got {digest}; deleting and treating as miss"
                    )
                    remove_path(temp)
                    # The caller re-uploads on a miss, which skips keys that still exist.
                    self._store(bucket).delete(key)
                    return DownloadResponse(downloaded=False)
                os.replace(temp, output)
        except BaseException:
            remove_path(temp)
            raise
        finally:
            body.close()

        logger.info(f"Downloaded s3://{bucket}/{key} -> {output}")
        return DownloadResponse(downloaded=True)

    def _upload(self, request: UploadRequest) -> UploadResponse:
        bucket, key = parse_object_path(request.object_path, self.default_bucket)
        store = self._store(bucket)

        if store.head(key) is not None:
            logger.debug(f"s3://{bucket}/{key} already exists, skipping upload")
            return UploadResponse(uploaded=False)

        with open_upload_stream(request.input_path, request.create_tar, request.compress) as stream:
            store.put(key, stream)

        logger.info(f"Uploaded {request.input_path} -> s3://{bucket}/{key}")
        return UploadResponse(uploaded=True)


def _swap_into_place(temp: Path, output: Path) -> None:
    """Replace output with the freshly extracted temp directory."""
    backup = None
    if output.exists() or output.is_symlink():
        backup = output.with_name(f"{output.name}.{uuid.uuid4().hex}.bak")
        os.rename(output, backup)
    os.rename(temp, output)
    if backup is not None:
        remove_path(backup)
