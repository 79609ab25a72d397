"""
Restore executor - orchestrates the retrieval workflow.

Workflow:
1. Choose the storage target (named, else the first configured)
2. Resolve the remote key ("latest"/"last" picks the newest ``.enc`` key)
3. Download into the staging path, decrypt, delete the encrypted copy
4. Decompress unless the driver consumes compressed input
5. Hand the result to the driver's ``restore`` verb
"""

import os
import logging
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

from ..errors import ConfigurationError, MiniBackupError, StorageError
from ..models import BackupDefinition, RestoreRunResult
from .compression import decompress, strip_archive_extension
from .storage import S3Storage, prefix_for_listing

if TYPE_CHECKING:
    from .. import Runtime


logger = logging.getLogger(__name__)

LATEST_ALIASES = ('latest', 'last')
ENCRYPTED_SUFFIX = '.enc'


def resolve_latest_key(storage: S3Storage, prefix: str) -> str:
    """
    Find the most recent encrypted artifact under a prefix.

    Keys embed a fixed-width timestamp, so the lexicographic maximum is the newest.

    Raises:
        StorageError: If listing fails or no artifact exists
    """
    keys = [
        key for key in storage.list_objects(prefix=prefix_for_listing(prefix))
        if key.endswith(ENCRYPTED_SUFFIX)
    ]
    if not keys:
        raise StorageError(f"No backup found in s3://{storage.bucket_name}/{prefix}")
    return max(keys)


class RestoreExecutor:
    """
    Orchestrates the restore workflow for one definition.
    """

    def __init__(
        self,
        runtime: 'Runtime',
        definition: BackupDefinition,
        backup_file: str = 'latest',
        target: Optional[str] = None
    ):
        """
        Initialize restore executor.

        Args:
            runtime: Wired runtime
            definition: Backup definition to restore
            backup_file: Remote key, or "latest"/"last"
            target: Storage target name (default: first configured)
        """
        self.runtime = runtime
        self.definition = definition
        self.backup_file = backup_file or 'latest'
        self.target_name = target
        self.result = None
        self.logs = []

    def execute(self) -> RestoreRunResult:
        """
        Execute the restore.

        Never raises: failures are logged and recorded on the returned result.
        """
        self.result = RestoreRunResult(name=self.definition.name)
        self._log(f"Starting restore: {self.definition.name} ({self.backup_file})")

        try:
            self._execute_workflow()
            self.result.status = 'success'
            self._log("Restore completed successfully")

        except MiniBackupError as e:
            self.result.status = 'failed'
            self._error(f"Restore failed: {e}")

        except Exception as e:
            logger.exception(f"Unexpected error during restore of {self.definition.name}")
            self.result.status = 'failed'
            self._error(f"Restore failed with unexpected error: {e}")

        finally:
            self.result.completed_at = datetime.now(timezone.utc)
            self.result.logs = self.logs

        return self.result

    def _execute_workflow(self):
        """Execute the main restore workflow steps."""
        target = self.runtime.get_target(self.target_name)
        self.result.target = target.name
        storage = self.runtime.storage_for(target)

        remote_key = self._resolve_key(storage)
        self.result.remote_key = remote_key
        self._log(f"Restoring {remote_key} from {target.name}")

        artifact_path = self._retrieve(storage, remote_key)
        self.result.restored_path = artifact_path

        self.runtime.invoker.restore(self.definition, artifact_path)
        self._log(f"Module restored {os.path.basename(artifact_path)}")

    def _resolve_key(self, storage: S3Storage) -> str:
        if self.backup_file in LATEST_ALIASES:
            key = resolve_latest_key(storage, self.definition.remote_prefix)
            self._log(f"Found latest backup: {key}")
            return key

        if not self.backup_file.endswith(ENCRYPTED_SUFFIX):
            raise ConfigurationError(
                f"Backup file must be an encrypted artifact ({ENCRYPTED_SUFFIX}): {self.backup_file}"
            )
        return self.backup_file

    def _retrieve(self, storage: S3Storage, remote_key: str) -> str:
        """
        Download, decrypt and (if needed) decompress an artifact.

        Returns:
            Local path handed to the driver
        """
        encrypted_path = os.path.join(self.definition.local_path, os.path.basename(remote_key))
        storage.download(remote_key, encrypted_path)
        self._log(f"Downloaded encrypted file to: {encrypted_path}")

        decrypted_path = encrypted_path[:-len(ENCRYPTED_SUFFIX)]
        try:
            self.runtime.cipher.decrypt_file(encrypted_path, decrypted_path)
        finally:
            self._remove(encrypted_path)
        self._log(f"Decrypted file to: {decrypted_path}")

        if not decrypted_path.endswith('.gz') or self.definition.accepts_compressed:
            return decrypted_path

        final_path = strip_archive_extension(decrypted_path)
        try:
            decompress(decrypted_path, final_path)
        finally:
            self._remove(decrypted_path)
        self._log(f"Decompressed to: {final_path}")
        return final_path

    def _remove(self, path: str):
        try:
            os.remove(path)
        except OSError as e:
            self._log(f"Warning: Failed to remove {path}: {e}", logging.WARNING)

    def _error(self, message: str):
        self.result.errors.append(message)
        self._log(message, logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_restore_by_name(
    runtime: 'Runtime',
    name: str,
    backup_file: str = 'latest',
    target: Optional[str] = None
) -> RestoreRunResult:
    """
    Execute a restore by definition name.

    Raises:
        ConfigurationError: If no definition has this name
    """
    definition = runtime.get_definition(name)
    executor = RestoreExecutor(runtime, definition, backup_file, target)
    return executor.execute()
