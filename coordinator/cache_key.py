"""Parsing of package checksums into storage addressing keys."""

import re
from dataclasses import dataclass
from typing import Optional

CHECKSUM_PATTERN = re.compile(
    r'^(?:(?P<cache_key>(?P<cache_version>[0-9]+)(?P<cache_spec>.*))/)?(?P<hash>.*)$'
)


@dataclass(frozen=True)
class CacheKey:
    """
    Components of a checksum of the form '[<version><spec>/]<hash>'.

    Only hash addresses objects in storage; the prefix is optional.
    """
    hash: str
    cache_key: Optional[str] = None
    cache_version: Optional[int] = None
    cache_spec: Optional[str] = None

    @classmethod
    def parse(cls, checksum: str) -> 'CacheKey':
        """
        Raises:
            ValueError: If the checksum has an empty hash segment
        """
        match = CHECKSUM_PATTERN.match(checksum)
        if match is None or not match.group('hash'):
            raise ValueError(f"Invalid checksum: {checksum!r}")

        version = match.group('cache_version')
        return cls(
            hash=match.group('hash'),
            cache_key=match.group('cache_key'),
            cache_version=int(version) if version is not None else None,
            cache_spec=match.group('cache_spec')
        )

    def archive_key(self, compress: bool) -> str:
        """Object key of the package archive, e.g. '<hash>.zip.gz'."""
        return f"{self.hash}.zip.gz" if compress else f"{self.hash}.zip"


def build_archive_key(build_hash: str) -> str:
    """Object key of a package's build output archive."""
    return f"{build_hash}.tar.gz"
