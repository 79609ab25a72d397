"""
Compression handlers for backup artifacts.

- Directory: tar archive through gzip, written to ``<path>.tar.gz``
- Regular file: gzip, written to ``<path>.gz``

Backups skip entries they cannot archive; restores are all-or-nothing.
"""

import os
import gzip
import shutil
import stat
import tarfile
import logging
from datetime import datetime
from typing import Optional

from ..errors import CompressionError


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def compress(path: str) -> str:
    """
    Compress a file or directory next to itself.

    Args:
        path: File or directory to compress

    Returns:
        Path of the compressed artifact

    Raises:
        CompressionError: If the path is missing or the archive cannot be written
    """
    if not os.path.exists(path):
        raise CompressionError(f"Path does not exist: {path}")

    path = path.rstrip(os.sep) or path
    if os.path.isdir(path):
        compressed_path = f"{path}.tar.gz"
        handler = _compress_directory
    else:
        compressed_path = f"{path}.gz"
        handler = _compress_file

    try:
        handler(path, compressed_path)
        return compressed_path
    except (OSError, tarfile.TarError) as e:
        # Clean up partial archive on failure
        if os.path.exists(compressed_path):
            os.remove(compressed_path)
        raise CompressionError(f"Failed to compress {path}: {e}")


def _compress_file(file_path: str, compressed_path: str):
    with open(file_path, 'rb') as source, gzip.open(compressed_path, 'wb') as target:
        shutil.copyfileobj(source, target, CHUNK_SIZE)


def _compress_directory(directory: str, compressed_path: str):
    """
    Write every regular file and directory under ``directory`` to a tar.gz.

    Entry names are relative to ``directory``. Sockets, devices, FIFOs,
    symlinks and unreadable entries are skipped with a warning.
    """
    with tarfile.open(compressed_path, 'w:gz') as tar:
        for root, dirs, files in os.walk(directory, onerror=_log_walk_error):
            dirs.sort()
            for name in dirs + sorted(files):
                full_path = os.path.join(root, name)
                arcname = os.path.relpath(full_path, directory)
                _add_entry(tar, full_path, arcname)


def _add_entry(tar: tarfile.TarFile, full_path: str, arcname: str):
    try:
        mode = os.lstat(full_path).st_mode
    except OSError as e:
        logger.warning(f"Skipping inaccessible path {full_path}: {e}")
        return

    if not (stat.S_ISREG(mode) or stat.S_ISDIR(mode)):
        logger.warning(f"Skipping special file: {full_path}")
        return

    tarinfo = tar.gettarinfo(full_path, arcname=arcname)
    if tarinfo.isdir():
        tar.addfile(tarinfo)
        return

    try:
        with open(full_path, 'rb') as f:
            tar.addfile(tarinfo, f)
    except PermissionError as e:
        logger.warning(f"Skipping unreadable file {full_path}: {e}")


def _log_walk_error(error: OSError):
    logger.warning(f"Skipping inaccessible path {error.filename}: {error}")


def decompress(compressed_path: str, output_path: str) -> str:
    """
    Decompress an artifact produced by ``compress``.

    ``.tar.gz``/``.tgz`` and ``.tar`` are extracted into the ``output_path``
    directory; ``.gz`` is inflated into the ``output_path`` file.

    Returns:
        output_path

    Raises:
        CompressionError: On unsupported format, unsupported or unsafe
            entries, or I/O failure
    """
    if not os.path.exists(compressed_path):
        raise CompressionError(f"Compressed file not found: {compressed_path}")

    if compressed_path.endswith(('.tar.gz', '.tgz')):
        _extract_tar(compressed_path, output_path, 'r:gz')
    elif compressed_path.endswith('.tar'):
        _extract_tar(compressed_path, output_path, 'r:')
    elif compressed_path.endswith('.gz'):
        _decompress_file(compressed_path, output_path)
    else:
        raise CompressionError(f"Unsupported file format: {compressed_path}")

    logger.info(f"Decompressed {compressed_path} to {output_path}")
    return output_path


def _decompress_file(compressed_path: str, output_path: str):
    try:
        parent = os.path.dirname(output_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        with gzip.open(compressed_path, 'rb') as source, open(output_path, 'wb') as target:
            shutil.copyfileobj(source, target, CHUNK_SIZE)
    except (OSError, EOFError) as e:
        if os.path.exists(output_path):
            os.remove(output_path)
        raise CompressionError(f"Failed to decompress {compressed_path}: {e}")


def _extract_tar(archive_path: str, output_path: str, mode: str):
    created = not os.path.exists(output_path)
    try:
        with tarfile.open(archive_path, mode) as tar:
            members = tar.getmembers()
            # Validate everything before writing anything
            for member in members:
                _check_member(member, output_path)

            os.makedirs(output_path, exist_ok=True)
            for member in members:
                target = os.path.join(output_path, member.name)
                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                    continue
                os.makedirs(os.path.dirname(target), exist_ok=True)
                source = tar.extractfile(member)
                with source, open(target, 'wb') as f:
                    shutil.copyfileobj(source, f, CHUNK_SIZE)
                os.chmod(target, member.mode & 0o777 or 0o644)
    except (OSError, EOFError, tarfile.TarError, CompressionError) as e:
        if created and os.path.isdir(output_path):
            shutil.rmtree(output_path, ignore_errors=True)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to extract {archive_path}: {e}")


def _check_member(member: tarfile.TarInfo, output_path: str):
    if not (member.isfile() or member.isdir()):
        raise CompressionError(f"Unsupported tar entry type for: {member.name}")

    root = os.path.realpath(output_path)
    target = os.path.realpath(os.path.join(root, member.name))
    if os.path.isabs(member.name) or not (target == root or target.startswith(root + os.sep)):
        raise CompressionError(f"Tar entry escapes output directory: {member.name}")


def artifact_name(backup_name: str, unit: str, when: Optional[datetime] = None) -> str:
    """
    Generate a standardized raw artifact name.

    Format: {backup_name}-{unit}-{YYYYMMDD_HHMMSS}

    The fixed-width timestamp keeps lexicographic order chronological.
    """
    timestamp = (when or datetime.now()).strftime('%Y%m%d_%H%M%S')

    # Sanitize unit (replace spaces and special chars with underscores)
    safe_unit = "".join(
        c if c.isalnum() or c in ('-', '_', '.') else '_'
        for c in unit
    )

    return f"{backup_name}-{safe_unit}-{timestamp}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip a compression extension from a filename.

    Handles multi-part extensions like .tar.gz
    """
    for extension in ('.tar.gz', '.tgz', '.tar', '.gz'):
        if filename.endswith(extension):
            return filename[:-len(extension)]
    return filename


def is_compressed(path: str) -> bool:
    """True when the artifact is already gzip-compressed (.gz / .tar.gz / .tgz)."""
    return path.endswith(('.gz', '.tgz'))
