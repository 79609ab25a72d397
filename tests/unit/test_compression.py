"""
Unit tests for compression module (minibackup/backup/compression.py).

Tests compress/decompress for directories (tar.gz) and files (gz).
"""

import io
import os
import gzip
import socket
import tarfile
from datetime import datetime

import pytest

from minibackup.backup.compression import (
    artifact_name,
    compress,
    decompress,
    is_compressed,
    strip_archive_extension
)
from minibackup.errors import CompressionError


def _read_tree(root):
    """Map relative file paths under root to their bytes."""
    tree = {}
    for current, _, files in os.walk(root):
        for name in files:
            full_path = os.path.join(current, name)
            with open(full_path, 'rb') as f:
                tree[os.path.relpath(full_path, root)] = f.read()
    return tree


class TestCompress:
    """Test compress for files and directories."""

    def test_compress_directory(self, temp_files):
        """Test a directory becomes <path>.tar.gz with relative entry names."""
        archive_path = compress(str(temp_files))

        assert archive_path == f"{temp_files}.tar.gz"
        with tarfile.open(archive_path, 'r:gz') as tar:
            names = set(tar.getnames())

        assert 'test_file1.txt' in names
        assert 'nested' in names
        assert os.path.join('nested', 'test_file3.txt') in names
        assert not any(os.path.isabs(name) for name in names)

    def test_compress_file(self, temp_files):
        """Test a regular file becomes <path>.gz."""
        source = temp_files / 'test_file1.txt'

        compressed = compress(str(source))

        assert compressed == f"{source}.gz"
        with gzip.open(compressed, 'rb') as f:
            assert f.read() == b'Test content 1'

    def test_compress_missing_path(self, tmp_path):
        """Test compressing a missing path raises CompressionError."""
        with pytest.raises(CompressionError, match="does not exist"):
            compress(str(tmp_path / 'missing'))

    def test_compress_skips_symlinks(self, temp_files, tmp_path):
        """Test symlinks are skipped, not archived."""
        os.symlink(str(temp_files / 'test_file1.txt'), str(temp_files / 'link.txt'))

        archive_path = compress(str(temp_files))

        with tarfile.open(archive_path, 'r:gz') as tar:
            assert 'link.txt' not in tar.getnames()

    def test_compress_skips_sockets(self, tmp_path):
        """Test sockets are skipped with a warning, not a failure."""
        source = tmp_path / 's'
        source.mkdir()
        (source / 'data.txt').write_text('data')
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(source / 'app.sock'))
            archive_path = compress(str(source))
        finally:
            sock.close()

        with tarfile.open(archive_path, 'r:gz') as tar:
            assert tar.getnames() == ['data.txt']


class TestDecompress:
    """Test decompress."""

    def test_directory_roundtrip(self, temp_files, tmp_path):
        """Test decompress(compress(dir)) reproduces the tree."""
        archive_path = compress(str(temp_files))
        output = tmp_path / 'restored'

        decompress(archive_path, str(output))

        assert _read_tree(str(output)) == _read_tree(str(temp_files))

    def test_file_roundtrip(self, temp_files, tmp_path):
        """Test decompress(compress(file)) reproduces the bytes."""
        compressed = compress(str(temp_files / 'test_file2.log'))
        output = tmp_path / 'restored.log'

        decompress(compressed, str(output))

        assert output.read_text() == 'Test log content'

    def test_plain_tar(self, temp_files, tmp_path):
        """Test uncompressed .tar archives are extracted."""
        archive_path = tmp_path / 'plain.tar'
        with tarfile.open(archive_path, 'w') as tar:
            tar.add(str(temp_files / 'test_file1.txt'), arcname='test_file1.txt')

        decompress(str(archive_path), str(tmp_path / 'out'))

        assert (tmp_path / 'out' / 'test_file1.txt').read_text() == 'Test content 1'

    def test_unsupported_format(self, tmp_path):
        """Test an unknown suffix is rejected."""
        archive_path = tmp_path / 'archive.zip'
        archive_path.write_bytes(b'PK')

        with pytest.raises(CompressionError, match="Unsupported file format"):
            decompress(str(archive_path), str(tmp_path / 'out'))

    def test_rejects_symlink_entry(self, tmp_path):
        """Test an archive with a symlink fails before anything is written."""
        archive_path = tmp_path / 'links.tar.gz'
        with tarfile.open(archive_path, 'w:gz') as tar:
            data = b'regular'
            info = tarfile.TarInfo('a_regular.txt')
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

            link = tarfile.TarInfo('z_link')
            link.type = tarfile.SYMTYPE
            link.linkname = '/etc/passwd'
            tar.addfile(link)

        output = tmp_path / 'out'
        with pytest.raises(CompressionError, match="Unsupported tar entry type"):
            decompress(str(archive_path), str(output))

        assert not output.exists()

    def test_rejects_path_traversal(self, tmp_path):
        """Test an entry escaping the output directory is rejected."""
        archive_path = tmp_path / 'evil.tar.gz'
        with tarfile.open(archive_path, 'w:gz') as tar:
            data = b'evil'
            info = tarfile.TarInfo('../evil.txt')
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

        with pytest.raises(CompressionError, match="escapes"):
            decompress(str(archive_path), str(tmp_path / 'out'))

        assert not (tmp_path / 'evil.txt').exists()

    def test_corrupt_gzip(self, tmp_path):
        """Test a corrupt .gz raises CompressionError and leaves no output."""
        corrupt = tmp_path / 'data.gz'
        corrupt.write_bytes(b'not gzip at all')
        output = tmp_path / 'data'

        with pytest.raises(CompressionError):
            decompress(str(corrupt), str(output))

        assert not output.exists()


class TestNamingHelpers:
    """Test artifact naming helpers."""

    def test_artifact_name_format(self):
        """Test name-unit-YYYYMMDD_HHMMSS."""
        name = artifact_name('site', 'www', datetime(2024, 1, 2, 3, 4, 5))

        assert name == 'site-www-20240102_030405'

    def test_artifact_name_sanitizes_unit(self):
        """Test spaces and slashes in the unit are replaced."""
        name = artifact_name('db', 'my db/prod', datetime(2024, 1, 2))

        assert name == 'db-my_db_prod-20240102_000000'

    def test_artifact_names_sort_chronologically(self):
        """Test lexicographic order equals chronological order."""
        names = [
            artifact_name('b', 'u', datetime(2024, 1, 2)),
            artifact_name('b', 'u', datetime(2023, 12, 31, 23, 59, 59)),
            artifact_name('b', 'u', datetime(2024, 1, 1))
        ]

        assert max(names) == 'b-u-20240102_000000'

    @pytest.mark.parametrize("filename,expected", [
        ("backup.tar.gz", "backup"),
        ("backup.tgz", "backup"),
        ("backup.tar", "backup"),
        ("dump.sql.gz", "dump.sql"),
        ("backup", "backup"),
    ])
    def test_strip_archive_extension(self, filename, expected):
        assert strip_archive_extension(filename) == expected

    def test_is_compressed(self):
        assert is_compressed('dump.gz')
        assert is_compressed('tree.tar.gz')
        assert not is_compressed('dump.sql')
