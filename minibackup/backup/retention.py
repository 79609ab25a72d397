"""
Retention policy enforcement for backups.

Sweeps one storage backend under one remote prefix, deleting objects whose
age exceeds the tier's threshold. An object is only considered when its
actual storage class (read from the backend) belongs to the tier being swept.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..errors import StorageError
from ..models import RetentionPolicy, Tier
from .storage import S3Storage, prefix_for_listing


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Manages retention policy enforcement for one storage backend.
    """

    def __init__(self, storage: S3Storage):
        """
        Initialize retention manager.

        Args:
            storage: Backend to sweep
        """
        self.storage = storage
        self.logs = []

    def manage_retention(
        self,
        prefix: str,
        standard_days: Optional[int],
        glacier_days: Optional[int],
        tier: Tier
    ) -> List[str]:
        """
        Delete expired objects of ``tier`` under ``prefix``.

        Args:
            prefix: Remote prefix of one backup definition
            standard_days: Threshold for the standard tier
            glacier_days: Threshold for the glacier tier
            tier: Tier being swept

        Returns:
            Keys that were deleted

        Raises:
            StorageError: If listing the prefix fails
        """
        days = RetentionPolicy(standard_days, glacier_days).days_for(tier)
        if days is None or days <= 0:
            self._log(f"Retention for {tier.value} tier not configured, skipping")
            return []

        listing_prefix = prefix_for_listing(prefix)
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=days)
        self._log(
            f"Sweeping s3://{self.storage.bucket_name}/{listing_prefix} "
            f"({tier.value} tier, {days} days, cutoff {cutoff_date.isoformat()})"
        )

        objects = self.storage.list_objects(prefix=listing_prefix, details=True)

        deleted = []
        for obj in objects:
            key = obj['Key']
            if key.endswith('/'):
                continue

            if not _older_than(obj['LastModified'], cutoff_date):
                continue

            try:
                storage_class = self.storage.get_storage_class(key)
            except StorageError as e:
                self._log(f"Failed to read storage class of {key}: {e}", logging.WARNING)
                continue

            if not tier.matches(storage_class):
                continue

            try:
                self.storage.delete(key)
            except StorageError as e:
                self._log(f"Failed to delete S3 object {key}: {e}", logging.WARNING)
                continue

            deleted.append(key)
            self._log(f"Deleted S3 object: {key} ({storage_class})")

        self._log(f"Retention sweep complete, {len(deleted)} object(s) deleted")
        return deleted

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level used for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def _older_than(last_modified: datetime, cutoff_date: datetime) -> bool:
    # Backends may return naive timestamps; they are UTC
    if last_modified.tzinfo is None:
        last_modified = last_modified.replace(tzinfo=timezone.utc)
    return last_modified < cutoff_date
