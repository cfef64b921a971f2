"""Shared data type definitions (FileEntry, Chunk, Manifest)."""

import json
from dataclasses import dataclass, field
from typing import List


@dataclass(frozen=True)
class FileEntry:
    """
    A local file scheduled for a bulk transfer.
    """
    path: str
    size: int


@dataclass
class Chunk:
    """
    A balanced group of files archived and transferred as one unit.
    """
    files: List[FileEntry] = field(default_factory=list)
    size: int = 0

    def add(self, entry: FileEntry) -> None:
        self.files.append(entry)
        self.size += entry.size


@dataclass(frozen=True)
class ManifestEntry:
    """
    One archived chunk of a bulk generation.
    """
    key: str
    size: int


@dataclass(frozen=True)
class Manifest:
    """
    Complete description of one bulk cache generation.

    Attributes:
        all_files: Archived chunk objects that make up the generation
        uploaded: ISO8601 UTC timestamp identifying the generation
    """
    all_files: List[ManifestEntry]
    uploaded: str

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.all_files)

    def to_json(self) -> bytes:
        """Serialize to JSON bytes."""
        return json.dumps({
            'all_files': [
                {'key': entry.key, 'size': entry.size}
                for entry in self.all_files
            ],
            'uploaded': self.uploaded
        }).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> 'Manifest':
        """
        Deserialize from JSON bytes.

        Raises:
            ValueError: If the payload is not JSON or lacks required fields
        """
        try:
            obj = json.loads(data)
            return cls(
                all_files=[
                    ManifestEntry(key=str(entry['key']), size=int(entry['size']))
                    for entry in obj['all_files']
                ],
                uploaded=str(obj['uploaded'])
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid manifest payload: {e}") from e
