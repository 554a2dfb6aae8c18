"""
Archive helpers for volume backups.

Volume archives are gzip compressed tarballs produced inside a sandbox
container. Everything here streams, and every copy is capped so a hostile
or corrupted archive cannot exhaust the disk.
"""

import tarfile
import zlib
from typing import BinaryIO, Callable, Optional


DEFAULT_CHUNK_SIZE = 64 * 1024

# Multi-part extensions first so '.tar' never shadows '.tar.gz'
ARCHIVE_EXTENSIONS = ('.tar.gz', '.tar.bz2', '.tar.xz', '.tar', '.zip')


class CompressionError(Exception):
    """Raised when an archive cannot be read or written."""
    pass


class ResourceLimitError(CompressionError):
    """Raised when a copy or extraction exceeds the configured size cap."""
    pass


def copy_stream(
    src: BinaryIO,
    dst: BinaryIO,
    limit: Optional[int] = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    cancellation_check: Optional[Callable] = None
) -> int:
    """
    Copy src to dst in bounded chunks.

    Args:
        src: Readable stream
        dst: Writable stream
        limit: Maximum number of bytes allowed (None for no cap)
        chunk_size: Read size
        cancellation_check: Optional function called before each chunk

    Returns:
        Number of bytes copied

    Raises:
        ResourceLimitError: As soon as more than limit bytes have been read
    """
    copied = 0
    while True:
        if cancellation_check:
            cancellation_check()

        chunk = src.read(chunk_size)
        if not chunk:
            break

        copied += len(chunk)
        if limit is not None and copied > limit:
            raise ResourceLimitError(
                f"Size limit exceeded: more than {format_size(limit)} copied"
            )

        dst.write(chunk)

    return copied


def inspect_archive(archive_path: str, limit: Optional[int] = None) -> dict:
    """
    Walk a gzip tar archive without extracting it.

    Args:
        archive_path: Path to the .tar.gz file
        limit: Maximum decompressed size allowed (None for no cap)

    Returns:
        {'members': int, 'size': int} where size counts decompressed file bytes

    Raises:
        ResourceLimitError: If the decompressed content exceeds limit
        CompressionError: If the archive is unreadable
    """
    members = 0
    total = 0

    try:
        with tarfile.open(archive_path, 'r|gz') as tar:
            for member in tar:
                members += 1
                total += member.size
                if limit is not None and total > limit:
                    raise ResourceLimitError(
                        f"Archive exceeds size limit: decompressed content larger than {format_size(limit)}"
                    )
    except (tarfile.TarError, zlib.error, EOFError) as e:
        raise CompressionError(f"Archive is unreadable: {e}")
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")

    return {'members': members, 'size': total}


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for extension in ARCHIVE_EXTENSIONS:
        if filename.endswith(extension):
            return filename[:-len(extension)]
    return filename


def clean_snapshot_name(name: str) -> str:
    """
    Normalize a user supplied snapshot name.

    Archive extensions are stripped and path separators replaced with '-'
    so the name is always a single object key component.
    """
    name = strip_archive_extension(name.strip())
    return name.replace('/', '-').replace('\\', '-')


def format_size(size: int) -> str:
    """Human readable byte count (1.5 GB, 512 B)."""
    value = float(size)
    for unit in ('B', 'KB', 'MB', 'GB', 'TB'):
        if value < 1024 or unit == 'TB':
            if unit == 'B':
                return f"{int(value)} B"
            return f"{value:.1f} {unit}"
        value /= 1024
