"""Greedy bin-packing of files into size-balanced chunks."""

from typing import List, Sequence

from common.types import Chunk, FileEntry


def plan_chunks(files: Sequence[FileEntry], chunk_count: int) -> List[Chunk]:
    """
    Split files into at most chunk_count chunks of similar total size.

    Files are taken heaviest first (ties keep input order) and each goes to
    the currently lightest chunk (lowest index on ties). Empty chunks are
    dropped, so fewer files than chunk_count yields one file per chunk.

    Args:
        files: Files with their sizes
        chunk_count: Upper bound of chunks to produce

    Returns:
        Non-empty chunks; every input file appears in exactly one

    Raises:
        ValueError: If chunk_count is less than 1
    """
    if chunk_count < 1:
        raise ValueError(f"chunk_count must be at least 1, got {chunk_count}")

    ordered = sorted(enumerate(files), key=lambda item: (-item[1].size, item[0]))
    chunks = [Chunk() for _ in range(chunk_count)]

    for _, entry in ordered:
        lightest = min(range(chunk_count), key=lambda i: (chunks[i].size, i))
        chunks[lightest].add(entry)

    return [chunk for chunk in chunks if chunk.files]
