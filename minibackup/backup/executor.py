"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Require a storage target, then invoke the driver's ``backup`` verb
2. Per artifact: compress (unless already gzip) and delete the raw copy
3. Encrypt to ``<compressed>.enc`` and delete the compressed copy
4. Per storage target (bounded worker pool): retention sweep, then upload
5. Delete the encrypted copy once every target has been attempted
6. Return a BackupRunResult (status: success/partial/failed)
"""

import os
import shutil
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, Optional, TYPE_CHECKING

from ..errors import CodecError, MiniBackupError, StorageError
from ..models import ArtifactOutcome, BackupDefinition, BackupRunResult, StorageTarget, Tier
from .compression import compress, is_compressed
from .retention import RetentionManager
from .storage import join_key

if TYPE_CHECKING:
    from .. import Runtime


logger = logging.getLogger(__name__)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one definition.
    """

    def __init__(self, runtime: 'Runtime', definition: BackupDefinition, glacier_mode: bool = False):
        """
        Initialize backup executor.

        Args:
            runtime: Wired runtime (targets, cipher, invoker, config)
            definition: Backup definition to execute
            glacier_mode: Upload with the glacier storage class and sweep the glacier tier
        """
        self.runtime = runtime
        self.definition = definition
        self.glacier_mode = glacier_mode
        self.tier = Tier.from_glacier_mode(glacier_mode)
        self.result = None
        self.logs = []
        self._logs_lock = threading.Lock()

    def execute(self) -> BackupRunResult:
        """
        Execute the backup.

        Never raises: failures are logged and recorded on the returned result.

        Returns:
            BackupRunResult with execution results
        """
        self.result = BackupRunResult(name=self.definition.name, glacier_mode=self.glacier_mode)
        self._log(f"Starting backup: {self.definition.name} ({self.tier.value} tier)")

        try:
            self._execute_workflow()
            self.result.status = self._final_status()
            self._log(f"Backup finished with status: {self.result.status}")

        except MiniBackupError as e:
            self.result.status = 'failed'
            self._error(f"Backup failed: {e}")

        except Exception as e:
            logger.exception(f"Unexpected error during backup of {self.definition.name}")
            self.result.status = 'failed'
            self._error(f"Backup failed with unexpected error: {e}")

        finally:
            self.result.completed_at = datetime.now(timezone.utc)
            self.result.logs = self.logs

        return self.result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        if not self.runtime.targets:
            raise StorageError("No storage target configured")

        plugin_result = self.runtime.invoker.backup(self.definition, self.glacier_mode)
        self._log(f"Module produced {len(plugin_result.paths)} artifact(s)")

        for raw_path in plugin_result.paths:
            outcome = self._process_artifact(raw_path)
            self.result.artifacts.append(outcome)

    def _final_status(self) -> str:
        artifacts = self.result.artifacts
        if not artifacts or not any(a.uploaded_to for a in artifacts):
            return 'failed'
        if self.result.errors:
            return 'partial'
        return 'success'

    def _process_artifact(self, raw_path: str) -> ArtifactOutcome:
        """
        Compress, encrypt and upload one raw artifact.

        Failures are recorded on the outcome; they never abort other artifacts.
        """
        outcome = ArtifactOutcome(raw_path=raw_path)

        # Latest local copy; each step deletes its input once its output exists
        current_path = raw_path
        try:
            current_path = self._compress(raw_path)
            encrypted_path = self._encrypt(current_path)
        except (CodecError, OSError) as e:
            outcome.error = str(e)
            self._error(f"Failed to prepare {raw_path}: {e}")
            self._remove(current_path)
            return outcome

        outcome.remote_key = join_key(self.definition.remote_prefix, os.path.basename(encrypted_path))

        try:
            outcome.uploads = self._upload_to_targets(encrypted_path, outcome.remote_key)
        finally:
            self._remove(encrypted_path)

        for target_name, error in outcome.uploads.items():
            if error is not None:
                self._error(f"Upload of {outcome.remote_key} to {target_name} failed: {error}")
        return outcome

    def _compress(self, raw_path: str) -> str:
        if is_compressed(raw_path):
            self._log(f"{os.path.basename(raw_path)} is already compressed, skipping compression")
            return raw_path

        compressed_path = compress(raw_path)
        self._log(f"Compressed {raw_path} to {os.path.basename(compressed_path)}")
        self._remove(raw_path)
        return compressed_path

    def _encrypt(self, compressed_path: str) -> str:
        encrypted_path = f"{compressed_path}.enc"
        self.runtime.cipher.encrypt_file(compressed_path, encrypted_path)
        self._log(f"Encrypted {os.path.basename(compressed_path)}")
        self._remove(compressed_path)
        return encrypted_path

    def _upload_to_targets(self, encrypted_path: str, remote_key: str) -> Dict[str, Optional[str]]:
        """
        Sweep and upload to every storage target concurrently.

        Returns:
            target name -> error message, or None on success
        """
        targets = self.runtime.targets
        workers = max(1, min(int(self.runtime.config.get('UPLOAD_WORKERS', 4)), len(targets)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='upload') as pool:
            futures = {
                target.name: pool.submit(self._upload_to_target, target, encrypted_path, remote_key)
                for target in targets
            }
            # Insertion order keeps configuration order
            return {name: future.result() for name, future in futures.items()}

    def _upload_to_target(self, target: StorageTarget, encrypted_path: str, remote_key: str) -> Optional[str]:
        """Returns the error message for this target, or None on success."""
        try:
            self._sweep_and_upload(target, encrypted_path, remote_key)
            return None
        except MiniBackupError as e:
            return str(e)
        except Exception as e:
            logger.exception(f"Unexpected error uploading to {target.name}")
            return f"Unexpected error: {e}"

    def _sweep_and_upload(self, target: StorageTarget, encrypted_path: str, remote_key: str):
        storage = self.runtime.storage_for(target)

        retention = self.definition.retention
        manager = RetentionManager(storage)
        try:
            deleted = manager.manage_retention(
                self.definition.remote_prefix,
                retention.standard_days,
                retention.glacier_days,
                self.tier
            )
            if deleted:
                self._log(f"Retention removed {len(deleted)} object(s) from {target.name}")
        except StorageError as e:
            # Upload proceeds even when the sweep cannot list the prefix
            self._log(f"Retention sweep on {target.name} failed: {e}", logging.WARNING)

        storage.upload(encrypted_path, remote_key, self.tier)
        self._log(f"Uploaded {remote_key} to {target.name} ({target.bucket})")

    def _remove(self, path: str):
        """Delete a local artifact; failures are logged, never raised."""
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.remove(path)
        except OSError as e:
            self._log(f"Warning: Failed to remove {path}: {e}", logging.WARNING)

    def _error(self, message: str):
        self.result.errors.append(message)
        self._log(message, logging.ERROR)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level used for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        with self._logs_lock:
            self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def execute_backup_by_name(runtime: 'Runtime', name: str, glacier_mode: bool = False) -> BackupRunResult:
    """
    Execute a backup by definition name.

    Args:
        runtime: Wired runtime
        name: Backup definition name
        glacier_mode: Target the glacier tier

    Returns:
        BackupRunResult with execution results

    Raises:
        ConfigurationError: If no definition has this name
    """
    definition = runtime.get_definition(name)
    executor = BackupExecutor(runtime, definition, glacier_mode)
    return executor.execute()
