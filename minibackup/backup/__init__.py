"""
Backup module for mini-backup.

This module handles the core backup functionality including:
- Compression
- Storage (S3-compatible targets)
- Retention policy enforcement
- Driver module registry and invocation
- Backup and restore orchestration
"""

from .executor import BackupExecutor, execute_backup_by_name
from .restore import RestoreExecutor, execute_restore_by_name
from .compression import compress, decompress
from .storage import S3Storage
from .retention import RetentionManager
from .modules import Module, ModuleRegistry
from .invoker import PluginInvoker

__all__ = [
    'BackupExecutor',
    'execute_backup_by_name',
    'RestoreExecutor',
    'execute_restore_by_name',
    'compress',
    'decompress',
    'S3Storage',
    'RetentionManager',
    'Module',
    'ModuleRegistry',
    'PluginInvoker'
]
