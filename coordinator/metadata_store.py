"""Manifest persistence for bulk cache generations under metadata/<cacheKey>."""

import io
from typing import Optional

from common.constants import METADATA_PREFIX
from common.logging_config import get_logger
from common.storage import ObjectStore
from common.types import Manifest

logger = get_logger(__name__)


class MetadataStore:
    """
    Key/value layer storing one Manifest per cache key.

    get() has three outcomes: a Manifest (possibly listing no files), None
    when no manifest exists or it cannot be parsed, and StorageError raised
    by the store for transport or permission failures.
    """

    def __init__(self, store: ObjectStore):
        self.store = store

    @staticmethod
    def object_key(cache_key: str) -> str:
        return f"{METADATA_PREFIX}/{cache_key}"

    def save(self, cache_key: str, manifest: Manifest) -> None:
        """
        Overwrite the manifest for cache_key.

        Raises:
            StorageError: If the write fails
        """
        key = self.object_key(cache_key)
        self.store.put(key, io.BytesIO(manifest.to_json()))
        logger.info(f"Saved manifest {key} ({len(manifest.all_files)} archives, generation {manifest.uploaded})")

    def get(self, cache_key: str) -> Optional[Manifest]:
        """
        Fetch the manifest for cache_key.

        Raises:
            StorageError: If the read fails for a reason other than absence
        """
        key = self.object_key(cache_key)
        stream = self.store.get(key)
        if stream is None:
            return None

        try:
            data = stream.read()
        finally:
            stream.close()

        try:
            return Manifest.from_json(data)
        except ValueError as e:
            logger.warning(f"Ignoring malformed manifest {key}: {e}")
            return None
