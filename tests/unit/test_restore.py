"""
Unit tests for restore executor (minibackup/backup/restore.py).
"""

import gzip
import io
import os
import tarfile
from unittest.mock import MagicMock

import pytest

from minibackup.backup.restore import RestoreExecutor, execute_restore_by_name, resolve_latest_key
from minibackup.errors import ConfigurationError, StorageError


def _tar_gz(files):
    """In-memory tar.gz of {name: content}."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w:gz') as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def _restore_driver(argv_file, result='true'):
    return f"""\
        printf '%s\\n' "$1" "$2" "$3" > {argv_file}
        echo '{{"result": {result}}}'
    """


class TestResolveLatestKey:
    """Test resolution of the "latest" alias."""

    def test_lexicographic_maximum_wins(self):
        storage = MagicMock()
        storage.list_objects.return_value = [
            'backups/site/site-www-20240101_000000.tar.gz.enc',
            'backups/site/site-www-20240102_000000.tar.gz.enc',
            'backups/site/site-www-20231231_235959.tar.gz.enc',
            'backups/site/site-www-20240103_000000.tar.gz',
        ]

        key = resolve_latest_key(storage, 'backups/site')

        assert key == 'backups/site/site-www-20240102_000000.tar.gz.enc'
        storage.list_objects.assert_called_once_with(prefix='backups/site/')

    def test_no_encrypted_artifact(self):
        storage = MagicMock()
        storage.bucket_name = 'primary-bucket'
        storage.list_objects.return_value = ['backups/site/notes.txt']

        with pytest.raises(StorageError, match="No backup found"):
            resolve_latest_key(storage, 'backups/site')


class TestRestoreExecutorEndToEnd:
    """Test full restores against moto."""

    def _upload(self, mock_s3, cipher, bucket, key, payload):
        mock_s3.Object(bucket, key).put(Body=cipher.encrypt_bytes(payload))

    def test_restore_latest_directory(self, mock_s3, cipher, make_runtime, make_module, staging_dir, tmp_path):
        """Test the newest tar.gz is decrypted, extracted and handed to the driver."""
        argv_file = tmp_path / 'argv'
        make_module('folder', _restore_driver(argv_file))
        self._upload(mock_s3, cipher, 'primary-bucket', 'backups/site/site-www-20240101_000000.tar.gz.enc',
                     _tar_gz({'index.html': 'old'}))
        self._upload(mock_s3, cipher, 'primary-bucket', 'backups/site/site-www-20240102_000000.tar.gz.enc',
                     _tar_gz({'index.html': 'new', 'nested/style.css': 'css'}))

        result = execute_restore_by_name(make_runtime(), 'site', 'latest')

        assert result.status == 'success', result.errors
        assert result.target == 'primary'
        assert result.remote_key == 'backups/site/site-www-20240102_000000.tar.gz.enc'

        restored = staging_dir / 'site-www-20240102_000000'
        assert result.restored_path == str(restored)
        assert (restored / 'index.html').read_text() == 'new'
        assert (restored / 'nested' / 'style.css').read_text() == 'css'
        # Intermediates are removed
        assert sorted(os.listdir(staging_dir)) == ['site-www-20240102_000000']

        verb, name, path = argv_file.read_text().splitlines()
        assert (verb, name, path) == ('restore', 'site', str(restored))

    def test_restore_single_file(self, mock_s3, cipher, make_runtime, make_module, staging_dir, tmp_path):
        make_module('folder', _restore_driver(tmp_path / 'argv'))
        self._upload(mock_s3, cipher, 'primary-bucket', 'backups/site/site-dump-20240101_000000.gz.enc',
                     gzip.compress(b'plain dump'))

        result = execute_restore_by_name(make_runtime(), 'site', 'backups/site/site-dump-20240101_000000.gz.enc')

        assert result.status == 'success', result.errors
        assert (staging_dir / 'site-dump-20240101_000000').read_bytes() == b'plain dump'

    def test_compressed_input_is_kept_for_mongo(self, mock_s3, cipher, make_runtime, make_module,
                                               mongo_definition, staging_dir, tmp_path):
        """Test a driver consuming compressed input receives the .gz as is."""
        argv_file = tmp_path / 'argv'
        make_module('mongo', _restore_driver(argv_file))
        payload = gzip.compress(b'archive')
        self._upload(mock_s3, cipher, 'primary-bucket', 'backups/orders/orders-orders-20240101_000000.gz.enc', payload)

        result = execute_restore_by_name(make_runtime(definitions=[mongo_definition]), 'orders')

        restored = staging_dir / 'orders-orders-20240101_000000.gz'
        assert result.status == 'success', result.errors
        assert result.restored_path == str(restored)
        assert restored.read_bytes() == payload
        assert argv_file.read_text().splitlines()[2] == str(restored)

    def test_named_target(self, mock_s3, cipher, make_runtime, make_module, tmp_path):
        make_module('folder', _restore_driver(tmp_path / 'argv'))
        self._upload(mock_s3, cipher, 'secondary-bucket', 'backups/site/site-www-20240101_000000.tar.gz.enc',
                     _tar_gz({'index.html': 'secondary'}))

        result = execute_restore_by_name(make_runtime(), 'site', 'last', target='secondary')

        assert result.status == 'success', result.errors
        assert result.target == 'secondary'

    def test_tampered_artifact_fails(self, mock_s3, cipher, make_runtime, make_module, staging_dir, tmp_path):
        """Test an authentication failure writes nothing and never reaches the driver."""
        argv_file = tmp_path / 'argv'
        make_module('folder', _restore_driver(argv_file))
        data = bytearray(cipher.encrypt_bytes(_tar_gz({'a': 'b'})))
        data[-1] ^= 0x01
        mock_s3.Object('primary-bucket', 'backups/site/site-www-20240101_000000.tar.gz.enc').put(Body=bytes(data))

        result = execute_restore_by_name(make_runtime(), 'site')

        assert result.status == 'failed'
        assert any('Decryption failed' in error for error in result.errors)
        assert not (staging_dir / 'site-www-20240101_000000.tar.gz').exists()
        assert not (staging_dir / 'site-www-20240101_000000.tar.gz.enc').exists()
        assert not argv_file.exists()

    def test_corrupt_archive_leaves_nothing_staged(self, mock_s3, cipher, make_runtime, make_module, staging_dir, tmp_path):
        """Test a decrypted archive that fails to unpack is removed with its encrypted copy."""
        argv_file = tmp_path / 'argv'
        make_module('folder', _restore_driver(argv_file))
        self._upload(mock_s3, cipher, 'primary-bucket', 'backups/site/site-www-20240101_000000.tar.gz.enc',
                     b'not a gzip stream')

        result = execute_restore_by_name(make_runtime(), 'site')

        assert result.status == 'failed'
        for name in ('site-www-20240101_000000.tar.gz.enc', 'site-www-20240101_000000.tar.gz', 'site-www-20240101_000000'):
            assert not (staging_dir / name).exists()
        assert not argv_file.exists()

    def test_driver_reports_failure(self, mock_s3, cipher, make_runtime, make_module, tmp_path):
        make_module('folder', _restore_driver(tmp_path / 'argv', result='false'))
        self._upload(mock_s3, cipher, 'primary-bucket', 'backups/site/site-www-20240101_000000.tar.gz.enc',
                     _tar_gz({'index.html': 'x'}))

        result = execute_restore_by_name(make_runtime(), 'site')

        assert result.status == 'failed'
        assert any('failed restore' in error for error in result.errors)


class TestRestoreExecutorFailures:
    """Test failures before any download."""

    def test_key_without_encrypted_suffix_is_rejected(self, make_runtime, folder_definition):
        storage = MagicMock()
        runtime = make_runtime(storage_factory=lambda target: storage)

        result = RestoreExecutor(runtime, folder_definition, 'backups/site/site-www.tar.gz').execute()

        assert result.status == 'failed'
        assert any('.enc' in error for error in result.errors)
        storage.download.assert_not_called()

    def test_unknown_target(self, make_runtime, folder_definition):
        result = RestoreExecutor(make_runtime(), folder_definition, target='missing').execute()

        assert result.status == 'failed'
        assert any('Unknown storage target: missing' in error for error in result.errors)

    def test_no_targets(self, make_runtime, folder_definition):
        result = RestoreExecutor(make_runtime(targets=[]), folder_definition).execute()

        assert result.status == 'failed'
        assert any('No storage target configured' in error for error in result.errors)

    def test_nothing_to_restore(self, make_runtime, folder_definition):
        storage = MagicMock()
        storage.bucket_name = 'primary-bucket'
        storage.list_objects.return_value = []

        result = RestoreExecutor(make_runtime(storage_factory=lambda target: storage), folder_definition).execute()

        assert result.status == 'failed'
        assert any('No backup found' in error for error in result.errors)

    def test_download_failure(self, make_runtime, folder_definition):
        storage = MagicMock()
        storage.download.side_effect = StorageError("S3 download failed (404)")

        result = RestoreExecutor(
            make_runtime(storage_factory=lambda target: storage),
            folder_definition,
            'backups/site/site-www-20240101_000000.tar.gz.enc'
        ).execute()

        assert result.status == 'failed'
        assert result.remote_key == 'backups/site/site-www-20240101_000000.tar.gz.enc'
        assert result.completed_at is not None

    def test_unknown_definition(self, make_runtime):
        with pytest.raises(ConfigurationError, match="not found"):
            execute_restore_by_name(make_runtime(), 'unknown')
