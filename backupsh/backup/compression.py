"""
Compression stage for backup archives.

Archives are tar streams compressed with zstd; the external zstd process
does the work (multi-threaded with -T0) so the Python side only moves
bytes between pipes.
"""

import os
import subprocess
from datetime import datetime
from typing import BinaryIO, Optional

from backupsh.errors import CompressionError


ARCHIVE_EXTENSION = 'tar.zst'
ENCRYPTED_EXTENSION = 'gpg'

COMPRESS_COMMAND = ['zstd', '-T0', '-q', '-c']
DECOMPRESS_COMMAND = ['zstd', '-d', '-q', '-c']

SIZE_UNITS = ('B', 'K', 'M', 'G', 'T', 'P')


def start_compressor(output: BinaryIO) -> subprocess.Popen:
    """
    Start the compressor writing into an open file.

    Args:
        output: Binary file object receiving the compressed stream

    Returns:
        Popen whose stdin accepts the uncompressed tar stream

    Raises:
        CompressionError: If the compressor cannot be started
    """
    try:
        return subprocess.Popen(COMPRESS_COMMAND, stdin=subprocess.PIPE, stdout=output)
    except OSError as e:
        raise CompressionError(f"Failed to start compressor {COMPRESS_COMMAND[0]}: {e}") from e


def start_decompressor(source, stdout=subprocess.PIPE) -> subprocess.Popen:
    """
    Start the decompressor reading from a file object or pipe.

    Raises:
        CompressionError: If the decompressor cannot be started
    """
    try:
        return subprocess.Popen(DECOMPRESS_COMMAND, stdin=source, stdout=stdout)
    except OSError as e:
        raise CompressionError(f"Failed to start decompressor {DECOMPRESS_COMMAND[0]}: {e}") from e


def generate_archive_filename(remote_name: str, label: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {remote_name}-{YYYYMMDD-HHMMSS}[-{label}].tar.zst

    Args:
        remote_name: Hostname of the backed up machine
        label: Optional suffix (e.g. nightly)
        now: Timestamp to use (defaults to the current time)

    Returns:
        Filename (without path)
    """
    timestamp = (now or datetime.now()).strftime('%Y%m%d-%H%M%S')

    base_name = f"{_sanitize(remote_name)}-{timestamp}"
    if label:
        base_name += f"-{_sanitize(label)}"

    return f"{base_name}.{ARCHIVE_EXTENSION}"


def _sanitize(value: str) -> str:
    # Replace spaces and special chars with underscores
    return "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in value
    )


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles .tar.zst.gpg, .tar.zst and a lone .gpg

    Args:
        filename: Archive filename with extension

    Returns:
        Filename without extension
    """
    for suffix in (f'.{ARCHIVE_EXTENSION}.{ENCRYPTED_EXTENSION}', f'.{ARCHIVE_EXTENSION}', f'.{ENCRYPTED_EXTENSION}'):
        if filename.endswith(suffix):
            return filename[:-len(suffix)]
    # Fallback to standard splitext
    return os.path.splitext(filename)[0]


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}") from e


def human_size(size_bytes: int) -> str:
    """Format a byte count the way `du -h` does (1.5G, 820M, 4.0K)."""
    size = float(size_bytes)
    for unit in SIZE_UNITS:
        if size < 1024 or unit == SIZE_UNITS[-1]:
            break
        size /= 1024

    if unit == 'B':
        return f"{int(size)}B"
    if size < 10:
        return f"{size:.1f}{unit}"
    return f"{size:.0f}{unit}"
