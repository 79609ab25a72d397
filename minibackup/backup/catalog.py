"""
Read-only queries over configured definitions and their remote artifacts.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union, TYPE_CHECKING

from ..errors import ConfigurationError
from .restore import ENCRYPTED_SUFFIX
from .storage import prefix_for_listing

if TYPE_CHECKING:
    from .. import Runtime


logger = logging.getLogger(__name__)


def list_backup_names(runtime: 'Runtime') -> List[str]:
    """Names of the configured backup definitions, in configuration order."""
    return list(runtime.definitions)


def list_backup_artifacts(
    runtime: 'Runtime',
    name: str,
    target: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    List the encrypted artifacts of one backup, newest first.

    Args:
        runtime: Wired runtime
        name: Backup definition name
        target: Storage target name (default: first configured)

    Returns:
        List of dicts with 'Key', 'Size' and 'LastModified'

    Raises:
        ConfigurationError: If the definition or target is unknown
        StorageError: If listing fails
    """
    definition = runtime.get_definition(name)
    storage = runtime.storage_for(runtime.get_target(target))

    objects = storage.list_objects(prefix=prefix_for_listing(definition.remote_prefix), details=True)
    artifacts = [obj for obj in objects if obj['Key'].endswith(ENCRYPTED_SUFFIX)]
    return sorted(artifacts, key=lambda obj: obj['Key'], reverse=True)


def list_all_artifacts(runtime: 'Runtime') -> Dict[str, Dict[str, List[Dict[str, Any]]]]:
    """
    List artifacts of every definition on every target.

    Returns:
        target name -> backup name -> artifacts (see ``list_backup_artifacts``)
    """
    catalog = {}
    for storage_target in runtime.targets:
        catalog[storage_target.name] = {
            name: list_backup_artifacts(runtime, name, storage_target.name)
            for name in runtime.definitions
        }
    return catalog


def _check_key(runtime: 'Runtime', name: str, key: str):
    definition = runtime.get_definition(name)
    if not key.startswith(prefix_for_listing(definition.remote_prefix)):
        raise ConfigurationError(f"Key {key} does not belong to backup {name}")


def generate_download_url(
    runtime: 'Runtime',
    name: str,
    key: str,
    target: Optional[str] = None,
    expiration: Optional[Union[int, timedelta]] = None
) -> str:
    """
    Generate a presigned URL for one artifact of a backup.

    The URL serves the encrypted artifact as stored.

    Raises:
        ConfigurationError: If the key is outside the backup's prefix
        StorageError: If signing fails
    """
    _check_key(runtime, name, key)
    storage = runtime.storage_for(runtime.get_target(target))
    if expiration is None:
        expiration = int(runtime.config.get('PRESIGNED_URL_TTL', 3600))
    return storage.generate_presigned_url(key, expiration)


def download_and_decrypt(
    runtime: 'Runtime',
    name: str,
    key: str,
    target: Optional[str] = None
) -> bytes:
    """
    Fetch one artifact and decrypt it in memory.

    Returns:
        Decrypted (still compressed) payload

    Raises:
        ConfigurationError: If the key is outside the backup's prefix
        StorageError: If the download fails
        CryptoError: If decryption fails
    """
    _check_key(runtime, name, key)
    storage = runtime.storage_for(runtime.get_target(target))
    payload = runtime.cipher.decrypt_bytes(storage.get_object_bytes(key))
    logger.info(f"Decrypted {key} in memory ({len(payload)} bytes)")
    return payload
