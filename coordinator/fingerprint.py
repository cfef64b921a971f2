"""Deterministic build fingerprints over a resolved dependency graph."""

import hashlib
import platform
import sys
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from common.constants import CYCLE_SENTINEL
from coordinator.exceptions import FingerprintError


@dataclass(frozen=True)
class PackageNode:
    """
    A package as seen by the fingerprint engine.

    Attributes:
        identity: Stable identity of the resolved package (e.g. locator hash)
        dependencies: Identities of the packages its dependencies resolved to
    """
    identity: str
    dependencies: Tuple[str, ...] = ()


class DependencyGraph:
    """Read-only identity -> PackageNode lookup over the host's resolution."""

    def __init__(self, nodes: Dict[str, PackageNode]):
        self._nodes = nodes

    @classmethod
    def from_nodes(cls, nodes: Iterable[PackageNode]) -> 'DependencyGraph':
        return cls({node.identity: node for node in nodes})

    def get(self, identity: str) -> Optional[PackageNode]:
        return self._nodes.get(identity)

    def __contains__(self, identity: str) -> bool:
        return identity in self._nodes

    def __iter__(self) -> Iterator[PackageNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)


def default_platform_triple() -> str:
    """Interpreter, OS and architecture of this machine, e.g. 'cpython-3.12-linux-x86_64'."""
    version = '.'.join(platform.python_version_tuple()[:2])
    return f"{sys.implementation.name}-{version}-{sys.platform}-{platform.machine()}"


def _digest(parts: Iterable[bytes]) -> str:
    builder = hashlib.sha512()
    for part in parts:
        builder.update(part)
    return builder.hexdigest()


class Fingerprinter:
    """
    Computes build hashes for one run.

    base_hash(node) = H(identity ++ sorted(base_hash(dep) for dep in deps))
    global_hash     = H(platform_triple ++ each registered blob)
    build_hash      = H(global_hash ++ base_hash(node) ++ each build location)

    Base hashes are memoized per instance. Dependency order never affects a
    digest; the order of registered global blobs does.
    """

    def __init__(self, graph: DependencyGraph, platform_triple: Optional[str] = None):
        self.graph = graph
        self.platform_triple = platform_triple or default_platform_triple()
        self._extra_global: List[bytes] = []
        self._global_hash: Optional[str] = None
        self._base_hashes: Dict[str, str] = {}

    def add_global_bytes(self, data) -> None:
        """
        Register collaborator-supplied bytes into the global hash.

        Args:
            data: bytes or str (encoded as UTF-8)
        """
        if isinstance(data, str):
            data = data.encode('utf-8')
        self._extra_global.append(bytes(data))
        self._global_hash = None

    def global_hash(self) -> str:
        if self._global_hash is None:
            parts = [self.platform_triple.encode('utf-8')]
            for blob in self._extra_global:
                parts.append(b'\0')
                parts.append(blob)
            self._global_hash = _digest(parts)
        return self._global_hash

    def base_hash(self, identity: str) -> str:
        """
        Hash of a package and its whole resolved subtree.

        Raises:
            FingerprintError: If the package or a dependency is not in the graph
        """
        cached = self._base_hashes.get(identity)
        if cached is not None:
            return cached

        node = self.graph.get(identity)
        if node is None:
            raise FingerprintError(f"Package {identity} is not registered in the dependency graph")

        # A node reached again while its own hash is pending resolves to the sentinel.
        self._base_hashes[identity] = CYCLE_SENTINEL

        dependency_hashes = []
        try:
            for dependency in node.dependencies:
                if dependency not in self.graph:
                    raise FingerprintError(
                        f"Dependency {dependency} of {identity} is not registered in the dependency graph"
                    )
                dependency_hashes.append(self.base_hash(dependency))
        except BaseException:
            # Every node on the failing path drops its pending marker.
            self._base_hashes.pop(identity, None)
            raise

        digest = _digest([identity.encode('utf-8')] + [h.encode('ascii') for h in sorted(dependency_hashes)])
        self._base_hashes[identity] = digest
        return digest

    def build_hash(self, identity: str, build_locations: Sequence[str] = ()) -> str:
        """
        Cache key for the build output of a package at the given locations.

        Raises:
            FingerprintError: If the package or a dependency is not in the graph
        """
        parts = [self.global_hash().encode('ascii'), self.base_hash(identity).encode('ascii')]
        parts.extend(str(location).encode('utf-8') for location in build_locations)
        return _digest(parts)
