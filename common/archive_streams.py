"""Streaming tar/gzip pipelines between local files and object storage streams."""

import gzip
import hashlib
import os
import shutil
import tarfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Sequence

from common.constants import STREAM_PIECE_SIZE_BYTES
from common.exceptions import ArchiveError
from common.logging_config import get_logger

logger = get_logger(__name__)


class ProducerStream:
    """
    Readable end of an OS pipe fed by a background producer thread.

    A failure inside the producer is raised from read() once the pipe is
    drained, so a consumer uploading this stream never sees a clean EOF for
    a truncated archive.

    Usage:
        with ProducerStream(lambda out: out.write(b"data")) as stream:
            store.put(key, stream)
    """

    def __init__(self, produce: Callable[[BinaryIO], None], name: str = "archive"):
        read_fd, write_fd = os.pipe()
        self._reader = os.fdopen(read_fd, 'rb')
        self._writer = os.fdopen(write_fd, 'wb')
        self._produce = produce
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, name=f"producer-{name}", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            self._produce(self._writer)
        except BrokenPipeError:
            # Consumer closed early; its own error is what gets reported.
            pass
        except BaseException as e:
            self._error = e
        finally:
            try:
                self._writer.close()
            except OSError:
                pass

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        data = self._reader.read(size)
        # A short read from the buffered pipe means the writer closed it.
        if not data or size < 0 or len(data) < size:
            self._thread.join()
            if self._error is not None:
                raise ArchiveError(f"Failed to produce archive stream: {self._error}") from self._error
        return data

    def close(self) -> None:
        self._reader.close()
        self._thread.join()

    def __enter__(self) -> 'ProducerStream':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class CountingReader:
    """Wrap a readable stream and report the cumulative bytes read."""

    def __init__(self, stream: BinaryIO, on_read: Callable[[int], None]):
        self._stream = stream
        self._on_read = on_read
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        if data:
            self.bytes_read += len(data)
            self._on_read(self.bytes_read)
        return data

    def close(self) -> None:
        self._stream.close()


def copy_stream(source: BinaryIO, target: BinaryIO, hasher=None) -> int:
    """
    Copy source into target in fixed-size pieces.

    Args:
        source: Readable stream
        target: Writable stream
        hasher: Optional hashlib object updated with every piece

    Returns:
        Number of bytes copied
    """
    total = 0
    while True:
        piece = source.read(STREAM_PIECE_SIZE_BYTES)
        if not piece:
            break
        target.write(piece)
        if hasher is not None:
            hasher.update(piece)
        total += len(piece)
    return total


def _write_tar(out: BinaryIO, base_dir: Path, members: Sequence[str], compress: bool) -> None:
    mode = 'w|gz' if compress else 'w|'
    with tarfile.open(fileobj=out, mode=mode) as tar:
        for member in members:
            tar.add(str(base_dir / member), arcname=member)


def _write_gzip(out: BinaryIO, input_path: Path) -> None:
    with open(input_path, 'rb') as source, gzip.GzipFile(fileobj=out, mode='wb') as gz:
        copy_stream(source, gz)


@contextmanager
def open_upload_stream(input_path: str, create_tar: bool, compress: bool) -> Iterator[BinaryIO]:
    """
    Open a readable stream for uploading input_path.

    Args:
        input_path: File or directory to upload
        create_tar: Archive input_path into a tar stream (directories are
            archived with their contents relative to the directory)
        compress: Gzip the resulting stream

    Raises:
        FileNotFoundError: If input_path does not exist
        ArchiveError: If a directory is uploaded without create_tar
    """
    path = Path(input_path)
    if not path.exists():
        raise FileNotFoundError(f"Upload input not found: {input_path}")

    if create_tar:
        if path.is_dir():
            base_dir, members = path, ['.']
        else:
            base_dir, members = path.parent, [path.name]
        with ProducerStream(lambda out: _write_tar(out, base_dir, members, compress), name=path.name) as stream:
            yield stream
        return

    if path.is_dir():
        raise ArchiveError(f"Cannot upload directory {input_path} without createTar")

    if compress:
        with ProducerStream(lambda out: _write_gzip(out, path), name=path.name) as stream:
            yield stream
        return

    with open(path, 'rb') as stream:
        yield stream


def open_tar_members_stream(base_dir: str, members: Sequence[str]) -> ProducerStream:
    """
    Stream an uncompressed tar of members, stored relative to base_dir.

    Args:
        base_dir: Directory the member paths are relative to
        members: Relative paths of the files to archive
    """
    return ProducerStream(lambda out: _write_tar(out, Path(base_dir), members, compress=False), name="chunk")


def extract_tar_stream(stream: BinaryIO, dest_dir: str, decompress: bool = False) -> None:
    """
    Extract a tar stream into dest_dir without seeking.

    The 'data' extraction filter rejects absolute paths, links escaping the
    destination and device files.

    Raises:
        ArchiveError: If the stream is not a valid (gzipped) tar archive
    """
    Path(dest_dir).mkdir(parents=True, exist_ok=True)
    mode = 'r|gz' if decompress else 'r|'
    try:
        with tarfile.open(fileobj=stream, mode=mode) as tar:
            tar.extractall(dest_dir, filter='data')
    except (tarfile.TarError, EOFError, gzip.BadGzipFile) as e:
        raise ArchiveError(f"Failed to extract archive into {dest_dir}: {e}") from e

    # Trailing record padding is not read by tarfile.
    while stream.read(STREAM_PIECE_SIZE_BYTES):
        pass


def write_file_stream(stream: BinaryIO, output_path: str, decompress: bool = False) -> str:
    """
    Write a (optionally gzipped) stream to output_path, returning its SHA-512 hex digest.

    Raises:
        ArchiveError: If decompress is set and the stream is not gzip data
    """
    hasher = hashlib.sha512()
    source = gzip.GzipFile(fileobj=stream, mode='rb') if decompress else stream
    try:
        with open(output_path, 'wb') as target:
            copy_stream(source, target, hasher)
    except (gzip.BadGzipFile, EOFError) as e:
        raise ArchiveError(f"Failed to decompress stream into {output_path}: {e}") from e
    return hasher.hexdigest()


def remove_path(path: Path) -> None:
    """Remove a file or directory tree, tolerating it being already gone."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    else:
        path.unlink(missing_ok=True)
