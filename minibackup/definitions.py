"""
Loading of backup definitions and storage targets from YAML.

Backups file::

    backups:
      site:
        type: folder
        folder: [/var/www]
        path:
          local: /var/backups/site
          s3: backups/site
        retention:
          standard: {days: 30}
          glacier: {days: 365}
        schedule:
          standard: "0 2 * * *"
          glacier: "0 3 1 * *"

Server file::

    rstorage:
      primary:
        endpoint: https://s3.example.com
        bucket_name: backups
        region: eu-west-1
        access_key: ${{ PRIMARY_ACCESS_KEY }}
        secret_key: ${{ PRIMARY_SECRET_KEY }}
        pathStyle: true
"""

import os
import re
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigurationError
from .models import BackupDefinition, RetentionPolicy, Schedule, StorageTarget, parse_params


logger = logging.getLogger(__name__)

ENV_REFERENCE = re.compile(r'\$\{\{\s*(\w+)\s*\}\}')


def resolve_env_references(value: str, environ: Optional[Dict[str, str]] = None) -> str:
    """
    Replace ``${{ VAR }}`` references with environment values.

    Unset or empty variables leave the reference untouched.
    """
    environ = os.environ if environ is None else environ

    def replace(match):
        resolved = environ.get(match.group(1))
        if not resolved:
            logger.warning(f"Environment variable {match.group(1)} is not set")
            return match.group(0)
        return resolved

    return ENV_REFERENCE.sub(replace, value)


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path) as f:
            content = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"Failed to open config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to decode YAML in {path}: {e}")

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return content


def _optional_days(name: str, tier: str, block: Any) -> Optional[int]:
    if block is None:
        return None
    if not isinstance(block, dict):
        raise ConfigurationError(f"Backup '{name}': retention.{tier} must be a mapping")
    days = block.get('days')
    if days is None:
        return None
    if isinstance(days, bool) or not isinstance(days, int):
        raise ConfigurationError(f"Backup '{name}': retention.{tier}.days must be an integer")
    return days


def parse_definition(name: str, raw: Any) -> BackupDefinition:
    """
    Build one BackupDefinition from its YAML block.

    The type-specific parameters live under the key named after the type.

    Raises:
        ConfigurationError: If the block is incomplete or invalid
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Backup '{name}' must be a mapping")

    backup_type = raw.get('type')
    if not backup_type or not isinstance(backup_type, str):
        raise ConfigurationError(f"Backup '{name}' has no type")
    backup_type = backup_type.lower()

    if backup_type not in raw:
        raise ConfigurationError(f"Backup '{name}': configuration for type '{backup_type}' not found")

    paths = raw.get('path') or {}
    if not isinstance(paths, dict) or not paths.get('local') or not paths.get('s3'):
        raise ConfigurationError(f"Backup '{name}' requires path.local and path.s3")

    retention = raw.get('retention') or {}
    schedule = raw.get('schedule') or {}
    if not isinstance(retention, dict) or not isinstance(schedule, dict):
        raise ConfigurationError(f"Backup '{name}': retention and schedule must be mappings")

    try:
        params = parse_params(backup_type, raw[backup_type])
    except ConfigurationError as e:
        raise ConfigurationError(f"Backup '{name}': {e}")

    return BackupDefinition(
        name=name,
        type=backup_type,
        params=params,
        local_path=str(paths['local']),
        remote_prefix=str(paths['s3']).strip('/'),
        retention=RetentionPolicy(
            standard_days=_optional_days(name, 'standard', retention.get('standard')),
            glacier_days=_optional_days(name, 'glacier', retention.get('glacier'))
        ),
        schedule=Schedule(
            standard=schedule.get('standard') or None,
            glacier=schedule.get('glacier') or None
        )
    )


def load_definitions(path: str) -> 'OrderedDict[str, BackupDefinition]':
    """
    Load every backup definition from a backups file.

    Returns:
        Definitions keyed by name, in file order

    Raises:
        ConfigurationError: If the file is unreadable or any definition is invalid
    """
    content = _read_yaml(path)
    backups = content.get('backups') or {}
    if not isinstance(backups, dict):
        raise ConfigurationError(f"'backups' in {path} must be a mapping")

    definitions = OrderedDict()
    for name, raw in backups.items():
        definitions[str(name)] = parse_definition(str(name), raw)

    logger.info(f"Loaded {len(definitions)} backup definition(s) from {path}")
    return definitions


def parse_target(name: str, raw: Any, environ: Optional[Dict[str, str]] = None) -> StorageTarget:
    """
    Build one StorageTarget from its ``rstorage`` block.

    Raises:
        ConfigurationError: If the bucket is missing
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Storage '{name}' must be a mapping")
    if not raw.get('bucket_name'):
        raise ConfigurationError(f"Storage '{name}' requires bucket_name")

    return StorageTarget(
        name=name,
        bucket=str(raw['bucket_name']),
        region=str(raw.get('region') or 'us-east-1'),
        endpoint=raw.get('endpoint') or None,
        access_key=resolve_env_references(str(raw.get('access_key') or ''), environ),
        secret_key=resolve_env_references(str(raw.get('secret_key') or ''), environ),
        path_style=bool(raw.get('pathStyle', False))
    )


def load_targets(path: str, environ: Optional[Dict[str, str]] = None) -> List[StorageTarget]:
    """
    Load storage targets from a server file, in file order.

    Raises:
        ConfigurationError: If the file is unreadable or any target is invalid
    """
    content = _read_yaml(path)
    storages = content.get('rstorage') or {}
    if not isinstance(storages, dict):
        raise ConfigurationError(f"'rstorage' in {path} must be a mapping")

    targets = [parse_target(str(name), raw, environ) for name, raw in storages.items()]
    logger.info(f"Loaded {len(targets)} storage target(s) from {path}")
    return targets
