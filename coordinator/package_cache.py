"""Cache operations exposed to the host build system, and wrappers around its
fetch and install capabilities.

Every failure degrades to doing the real work: a failed restore is a miss and
a failed publish is logged and ignored.
"""

import asyncio
import dataclasses
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

from common.exceptions import CacheError
from common.logging_config import get_logger
from common.protocol import DownloadRequest, UploadRequest
from coordinator.cache_key import CacheKey, build_archive_key
from coordinator.config import CacheConfig
from coordinator.exceptions import WorkerStartupError
from coordinator.fingerprint import DependencyGraph, Fingerprinter
from coordinator.transfer_client import TransferCoordinator

logger = get_logger(__name__)


class PackageFetcher(Protocol):
    """Host capability producing a package archive at output_path."""

    async def fetch(self, locator: str, checksum: Optional[str], output_path: str) -> str:
        ...


@dataclass(frozen=True)
class InstallResult:
    """
    Outcome of installing one package.

    Attributes:
        identity: Package identity in the dependency graph
        package_location: Directory the package was installed to
        build_required: The package has build scripts to run
        build_skipped: The build output was restored instead of rebuilt
    """
    identity: str
    package_location: str
    build_required: bool = False
    build_skipped: bool = False


class PackageInstaller(Protocol):
    """Host capability installing one package."""

    async def install_package(self, identity: str) -> InstallResult:
        ...


class PackageCache:
    """
    fingerprint / try_restore / publish for build outputs, plus single-object
    caching of package archives, all routed through the transfer worker.
    """

    def __init__(
        self,
        coordinator: TransferCoordinator,
        fingerprinter: Fingerprinter,
        bucket: str,
        compress: bool = False,
        should_fetch: bool = True,
        should_upload: bool = True,
        verify_checksum: bool = True
    ):
        """
        Initialize package cache.

        Args:
            coordinator: Ready transfer coordinator
            fingerprinter: Build hash engine for this run
            bucket: Cache bucket
            compress: Store package archives gzipped (<hash>.zip.gz)
            should_fetch: Restore from the cache
            should_upload: Publish to the cache
            verify_checksum: Compare downloaded archives with the checksum's hash
        """
        self.coordinator = coordinator
        self.fingerprinter = fingerprinter
        self.bucket = bucket
        self.compress = compress
        self.should_fetch = should_fetch
        self.should_upload = should_upload
        self.verify_checksum = verify_checksum
        self._inflight: Dict[str, asyncio.Future] = {}

    def _object_path(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def fingerprint(self, identity: str, build_locations: Sequence[str] = ()) -> str:
        """Build hash of a package installed at build_locations."""
        return self.fingerprinter.build_hash(identity, build_locations)

    async def try_restore(self, digest: str, destination: str) -> bool:
        """
        Restore a build output archive into destination.

        Returns:
            True on a hit; False on a miss or any failure
        """
        if not self.should_fetch:
            return False
        request = DownloadRequest(
            object_path=self._object_path(build_archive_key(digest)),
            output_path=destination,
            expected_checksum=None,
            decompress=True,
            untar=True
        )
        try:
            response = await self.coordinator.download_file(request)
        except CacheError as e:
            logger.warning(f"Restoring build {digest[:16]} failed, building instead: {e}")
            return False
        return response.downloaded

    async def publish(self, digest: str, source: str) -> bool:
        """
        Store the build output directory source under digest.

        Returns:
            True if an object was written; False if it already existed or the upload failed
        """
        if not self.should_upload:
            return False
        request = UploadRequest(
            object_path=self._object_path(build_archive_key(digest)),
            input_path=source,
            compress=True,
            create_tar=True
        )
        try:
            response = await self.coordinator.upload_file(request)
        except CacheError as e:
            logger.warning(f"Publishing build {digest[:16]} failed: {e}")
            return False
        return response.uploaded

    async def fetch_archive(
        self,
        checksum: str,
        output_path: str,
        loader: Callable[[], Awaitable[str]]
    ) -> str:
        """
        Produce the package archive for checksum at output_path, from the
        cache when possible.

        Concurrent calls for the same output_path share one fetch.

        Args:
            checksum: Package checksum '[<version><spec>/]<hash>'
            output_path: Where the archive must end up
            loader: Performs the real fetch on a miss

        Returns:
            output_path on a hit, otherwise the loader's result
        """
        task = self._inflight.get(output_path)
        if task is None:
            task = asyncio.ensure_future(self._fetch_archive(checksum, output_path, loader))
            self._inflight[output_path] = task
            task.add_done_callback(lambda _: self._inflight.pop(output_path, None))
        return await asyncio.shield(task)

    async def _fetch_archive(
        self,
        checksum: str,
        output_path: str,
        loader: Callable[[], Awaitable[str]]
    ) -> str:
        if os.path.exists(output_path):
            return await loader()

        cache_key = CacheKey.parse(checksum)
        object_path = self._object_path(cache_key.archive_key(self.compress))

        if self.should_fetch:
            request = DownloadRequest(
                object_path=object_path,
                output_path=output_path,
                expected_checksum=cache_key.hash if self.verify_checksum else None,
                decompress=self.compress,
                untar=False
            )
            try:
                response = await self.coordinator.download_file(request)
                if response.downloaded:
                    return output_path
            except CacheError as e:
                logger.warning(f"Cache lookup for {cache_key.hash[:16]} failed, fetching instead: {e}")

        result = await loader()

        # Conditional packages are not always materialized.
        if self.should_upload and os.path.exists(output_path):
            request = UploadRequest(
                object_path=object_path,
                input_path=output_path,
                compress=self.compress,
                create_tar=False
            )
            try:
                await self.coordinator.upload_file(request)
            except CacheError as e:
                logger.warning(f"Caching archive {cache_key.hash[:16]} failed: {e}")

        return result


class CachingFetcher:
    """PackageFetcher decorator serving archives from the cache."""

    def __init__(self, inner: PackageFetcher, cache: PackageCache):
        self.inner = inner
        self.cache = cache

    async def fetch(self, locator: str, checksum: Optional[str], output_path: str) -> str:
        if not checksum:
            return await self.inner.fetch(locator, checksum, output_path)
        return await self.cache.fetch_archive(
            checksum,
            output_path,
            lambda: self.inner.fetch(locator, checksum, output_path)
        )


@dataclass(frozen=True)
class PendingBuild:
    identity: str
    digest: str
    location: str


class CachingInstaller:
    """
    PackageInstaller decorator restoring build outputs from the cache.

    Builds that missed are remembered and published by publish_pending()
    once the host knows which of them succeeded.
    """

    def __init__(self, inner: PackageInstaller, cache: PackageCache):
        self.inner = inner
        self.cache = cache
        self.pending: List[PendingBuild] = []

    async def install_package(self, identity: str) -> InstallResult:
        result = await self.inner.install_package(identity)
        if not result.build_required or result.build_skipped:
            return result

        try:
            digest = self.cache.fingerprint(identity, [result.package_location])
        except CacheError as e:
            logger.warning(f"Cannot fingerprint {identity}, building without cache: {e}")
            return result

        if await self.cache.try_restore(digest, result.package_location):
            logger.info(f"Restored build output of {identity} from cache")
            return dataclasses.replace(result, build_skipped=True)

        self.pending.append(PendingBuild(identity=identity, digest=digest, location=result.package_location))
        return result

    async def publish_pending(self, build_succeeded: Callable[[str], bool]) -> int:
        """
        Publish the outputs of builds that succeeded.

        Args:
            build_succeeded: Tells whether the build of an identity succeeded

        Returns:
            Number of build outputs written to the cache
        """
        builds = [build for build in self.pending if build_succeeded(build.identity)]
        self.pending = []
        results = await asyncio.gather(*[
            self.cache.publish(build.digest, build.location) for build in builds
        ])
        return sum(1 for uploaded in results if uploaded)


@asynccontextmanager
async def open_package_cache(
    config: CacheConfig,
    graph: DependencyGraph,
    platform_triple: Optional[str] = None
) -> AsyncIterator[Optional[PackageCache]]:
    """
    Run a transfer worker for the duration of the block.

    Yields None when the worker cannot be started: caching is disabled for
    the run and the caller builds everything itself.

    Usage:
        async with open_package_cache(config, graph) as cache:
            if cache is not None:
                installer = CachingInstaller(installer, cache)
    """
    coordinator = TransferCoordinator(config)
    cache = None
    try:
        await coordinator.start()
        cache = PackageCache(
            coordinator,
            Fingerprinter(graph, platform_triple),
            bucket=config.bucket,
            compress=config.compress,
            should_fetch=config.should_fetch,
            should_upload=config.should_upload
        )
    except WorkerStartupError as e:
        logger.warning(f"Artifact cache disabled for this run: {e}")

    try:
        yield cache
    finally:
        await coordinator.stop()
