"""
Shared pytest fixtures for mini-backup tests.

This module provides fixtures for:
- Cipher with a fixed test key
- Backup definitions and storage targets
- Runtime wiring with a temporary credentials file
- Mock S3 via moto
- Driver modules written as small shell scripts
- Temporary file fixtures
"""

import stat
import textwrap
from collections import OrderedDict
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from minibackup import Runtime
from minibackup.backup.modules import ModuleRegistry
from minibackup.config import TestingConfig, config_to_dict
from minibackup.models import (
    BackupDefinition,
    FolderParams,
    MongoParams,
    RetentionPolicy,
    Schedule,
    StorageTarget
)
from minibackup.utils.crypto import ArtifactCipher, hex_key_provider


TEST_KEY_HEX = '00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff'


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so no test can reach a real account."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')
    monkeypatch.delenv('AWS_PROFILE', raising=False)


@pytest.fixture
def cipher():
    """ArtifactCipher with a fixed 32-byte test key."""
    return ArtifactCipher(hex_key_provider(TEST_KEY_HEX))


@pytest.fixture
def credentials_file(tmp_path):
    """Path of a (not yet existing) shared credentials file."""
    return str(tmp_path / 'aws' / 'credentials')


@pytest.fixture
def staging_dir(tmp_path):
    """Local staging directory of the test definitions."""
    path = tmp_path / 'staging'
    path.mkdir()
    return path


@pytest.fixture
def folder_definition(staging_dir):
    """
    Folder backup definition.

    Standard retention: 30 days, glacier retention: 60 days.
    """
    return BackupDefinition(
        name='site',
        type='folder',
        params=FolderParams(folders=('/var/www',)),
        local_path=str(staging_dir),
        remote_prefix='backups/site',
        retention=RetentionPolicy(standard_days=30, glacier_days=60),
        schedule=Schedule(standard='0 2 * * *', glacier='0 3 1 * *')
    )


@pytest.fixture
def mongo_definition(staging_dir):
    """Mongo backup definition (driver consumes compressed input)."""
    return BackupDefinition(
        name='orders',
        type='mongo',
        params=MongoParams(databases=('orders',), uri='mongodb://localhost:27017'),
        local_path=str(staging_dir),
        remote_prefix='backups/orders'
    )


@pytest.fixture
def storage_targets():
    """Two storage targets in configuration order."""
    return [
        StorageTarget(name='primary', bucket='primary-bucket', access_key='AKPRIMARY', secret_key='primary-secret'),
        StorageTarget(name='secondary', bucket='secondary-bucket', access_key='AKSECONDARY', secret_key='secondary-secret')
    ]


@pytest.fixture
def modules_dir(tmp_path):
    path = tmp_path / 'modules'
    path.mkdir()
    return path


@pytest.fixture
def make_module(modules_dir):
    """
    Factory writing a driver module (manifest + /bin/sh script).

    Usage: make_module('folder', script_body, output='structured', name=None, enable=True)
    """
    def _make(module_type, script, output='structured', name=None, enable=True, directory=None):
        name = name or f'{module_type}-driver'
        module_dir = modules_dir / (directory or name)
        module_dir.mkdir()

        (module_dir / 'module.yaml').write_text(textwrap.dedent(f"""\
            name: {name}
            version: 1.0.0
            type: {module_type}
            enable: {'true' if enable else 'false'}
            bin: driver.sh
            output: {output}
        """))

        bin_path = module_dir / 'driver.sh'
        bin_path.write_text('#!/bin/sh\n' + textwrap.dedent(script))
        bin_path.chmod(bin_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return module_dir

    return _make


@pytest.fixture
def registry(modules_dir):
    return ModuleRegistry(str(modules_dir))


@pytest.fixture
def test_config(credentials_file):
    settings = config_to_dict(TestingConfig)
    settings['AWS_CREDENTIALS_FILE'] = credentials_file
    return settings


@pytest.fixture
def make_runtime(test_config, registry, cipher, storage_targets, folder_definition):
    """
    Factory building a Runtime from the test fixtures.

    Usage: make_runtime(definitions=None, targets=None, storage_factory=None)
    """
    def _make(definitions=None, targets=None, storage_factory=None):
        if definitions is None:
            definitions = [folder_definition]
        return Runtime(
            config=test_config,
            definitions=OrderedDict((d.name, d) for d in definitions),
            targets=storage_targets if targets is None else targets,
            registry=registry,
            cipher=cipher,
            storage_factory=storage_factory
        )

    return _make


@pytest.fixture
def mock_s3(storage_targets):
    """
    Mock AWS S3 service using moto.

    Creates one bucket per test storage target in us-east-1.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')

        for target in storage_targets:
            s3.create_bucket(Bucket=target.bucket)

        yield s3


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - source/test_file1.txt
    - source/test_file2.log
    - source/nested/test_file3.txt
    """
    source = tmp_path / 'source'
    source.mkdir()
    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return source


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('minibackup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance

    import minibackup.scheduler as scheduler_module
    scheduler_module.scheduler = None
    scheduler_module.backup_runtime = None
