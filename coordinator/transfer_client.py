"""Control-process client owning the transfer worker's lifecycle and RPC channel."""

import asyncio
import itertools
import os
import tempfile
import uuid
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from common.constants import (
    DOWNLOAD_METHOD,
    PING_METHOD,
    RPC_PATH,
    SOCKET_FILE_PREFIX,
    UPLOAD_METHOD,
    WORKER_CONFIG_ENV_VAR,
    WORKER_STOP_GRACE_SECONDS,
)
from common.logging_config import get_logger
from common.protocol import (
    DownloadRequest,
    DownloadResponse,
    RpcRequest,
    RpcResponse,
    UploadRequest,
    UploadResponse,
)
from coordinator.config import CacheConfig
from coordinator.exceptions import (
    CoordinatorStateError,
    TransferChannelError,
    TransferError,
    TransferFailedError,
    WorkerExitedError,
    WorkerStartTimeoutError,
    WorkerStartupError,
)

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class CoordinatorState(str, Enum):
    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


def allocate_socket_path() -> str:
    """Unique unix socket path for one run, e.g. /tmp/s3cache-<uuid>.sock."""
    return os.path.join(tempfile.gettempdir(), f"{SOCKET_FILE_PREFIX}{uuid.uuid4().hex}.sock")


class TransferCoordinator:
    """
    Spawns the transfer worker, waits for it to answer Ping, and forwards
    Download/Upload calls to it over JSON-RPC on a per-run unix socket.

    Calls may be issued concurrently; each carries its own request id and
    is only accepted with a response bearing that id.

    Usage:
        async with TransferCoordinator(config) as coordinator:
            result = await coordinator.download_file(request)
    """

    def __init__(self, config: CacheConfig):
        """
        Initialize coordinator in the UNSTARTED state.

        Args:
            config: Cache configuration (worker limits, credentials, command)
        """
        self.config = config
        self.state = CoordinatorState.UNSTARTED
        self.socket_path: Optional[str] = None
        self.process: Optional[asyncio.subprocess.Process] = None
        self.session: Optional[httpx.AsyncClient] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> 'TransferCoordinator':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _worker_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config.credentials_provider is not None:
            env.update(self.config.credentials_provider())
        env[WORKER_CONFIG_ENV_VAR] = self.config.worker_config(self.socket_path).to_json()
        python_path = env.get('PYTHONPATH')
        env['PYTHONPATH'] = os.pathsep.join(filter(None, [str(PROJECT_ROOT), python_path]))
        return env

    async def start(self) -> None:
        """
        Spawn the worker and wait until it answers Ping.

        Raises:
            CoordinatorStateError: If start() was already called
            WorkerExitedError: If the worker exits before becoming ready
            WorkerStartTimeoutError: If Ping does not succeed within the startup timeout
            WorkerStartupError: If the worker cannot be spawned
        """
        if self.state != CoordinatorState.UNSTARTED:
            raise CoordinatorStateError(f"Cannot start coordinator in state {self.state.value}")

        self.state = CoordinatorState.STARTING
        self.socket_path = allocate_socket_path()
        command = self.config.command()

        try:
            self.process = await asyncio.create_subprocess_exec(*command, env=self._worker_env())
        except OSError as e:
            self.state = CoordinatorState.FAILED
            raise WorkerStartupError(f"Failed to spawn transfer worker {command[0]}: {e}") from e

        logger.info(f"Spawned transfer worker pid={self.process.pid} socket={self.socket_path}")

        if self.session is None:
            self.session = httpx.AsyncClient(
                transport=httpx.AsyncHTTPTransport(uds=self.socket_path),
                base_url="http://worker",
                timeout=None
            )

        try:
            await self._wait_until_ready()
        except WorkerStartupError:
            self.state = CoordinatorState.FAILED
            await self._shutdown()
            raise

        self.state = CoordinatorState.READY
        logger.info(f"Transfer worker ready on {self.socket_path}")

    async def _wait_until_ready(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.startup_timeout

        while True:
            if self.process.returncode is not None:
                raise WorkerExitedError(self.process.returncode)

            remaining = deadline - loop.time()
            if await self._probe(max(remaining, self.config.ping_interval)):
                return

            if self.process.returncode is not None:
                raise WorkerExitedError(self.process.returncode)
            if loop.time() >= deadline:
                raise WorkerStartTimeoutError(
                    f"Transfer worker did not answer Ping within {self.config.startup_timeout}s"
                )
            await asyncio.sleep(self.config.ping_interval)

    async def _probe(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._call(PING_METHOD, {}), timeout=timeout)
            return True
        except (TransferError, asyncio.TimeoutError) as e:
            logger.debug(f"Worker not ready yet: {e}")
            return False

    async def stop(self) -> None:
        """
        Terminate the worker and release the socket. In-flight calls are abandoned.
        Safe to call more than once and after a failed start().
        """
        if self.state == CoordinatorState.STOPPED:
            return
        await self._shutdown()
        self.state = CoordinatorState.STOPPED
        logger.info("Transfer worker stopped")

    async def _shutdown(self) -> None:
        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=WORKER_STOP_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning(f"Transfer worker pid={process.pid} ignored SIGTERM, killing")
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass

        if self.session is not None:
            await self.session.aclose()
            self.session = None

        if self.socket_path:
            Path(self.socket_path).unlink(missing_ok=True)

    async def _call(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send one request and wait for its matching response.

        Raises:
            CoordinatorStateError: If there is no open channel
            TransferChannelError: If the channel fails or the response does not match
            TransferFailedError: If the worker reports an error
        """
        session = self.session
        if session is None:
            raise CoordinatorStateError("Transfer channel is not open")

        request = RpcRequest(method=method, id=next(self._ids), params=[params])

        try:
            response = await session.post(
                RPC_PATH,
                content=request.to_json(),
                headers={'Content-Type': 'application/json'}
            )
        except (httpx.HTTPError, OSError) as e:
            raise TransferChannelError(f"{method} [id={request.id}] channel error: {e}") from e

        if response.status_code != 200:
            raise TransferChannelError(
                f"{method} [id={request.id}] unexpected HTTP status {response.status_code}"
            )

        try:
            rpc_response = RpcResponse.from_json(response.content)
        except ValueError as e:
            raise TransferChannelError(f"{method} [id={request.id}] malformed response: {e}") from e

        if rpc_response.id != request.id:
            raise TransferChannelError(
                f"{method} response id {rpc_response.id} does not match request id {request.id}"
            )
        if rpc_response.error is not None:
            raise TransferFailedError(f"{method} [id={request.id}] failed: {rpc_response.error}")

        return rpc_response.result or {}

    def _ensure_ready(self) -> None:
        if self.state != CoordinatorState.READY:
            raise CoordinatorStateError(f"Transfer worker is not ready (state={self.state.value})")

    async def ping(self) -> bool:
        """Check that the worker still answers. Never raises for channel failures."""
        try:
            await self._call(PING_METHOD, {})
            return True
        except TransferError as e:
            logger.warning(f"Ping failed: {e}")
            return False

    async def download_file(self, request: DownloadRequest) -> DownloadResponse:
        """
        Ask the worker to fetch an object.

        Returns:
            DownloadResponse; downloaded=False is a cache miss

        Raises:
            CoordinatorStateError: If the worker is not ready
            TransferChannelError: If the channel failed
            TransferFailedError: If the worker reported an error
        """
        self._ensure_ready()
        try:
            result = await self._call(DOWNLOAD_METHOD, request.to_dict())
        except TransferError as e:
            logger.error(f"Download of {request.object_path} failed: {e}")
            raise
        return DownloadResponse.from_dict(result)

    async def upload_file(self, request: UploadRequest) -> UploadResponse:
        """
        Ask the worker to store a local file or directory.

        Returns:
            UploadResponse; uploaded=False when the object already existed

        Raises:
            CoordinatorStateError: If the worker is not ready
            TransferChannelError: If the channel failed
            TransferFailedError: If the worker reported an error
        """
        self._ensure_ready()
        try:
            result = await self._call(UPLOAD_METHOD, request.to_dict())
        except TransferError as e:
            logger.error(f"Upload of {request.input_path} failed: {e}")
            raise
        return UploadResponse.from_dict(result)
