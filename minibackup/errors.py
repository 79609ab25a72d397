"""
Error taxonomy for backup and restore runs.

- ConfigurationError: missing/invalid definition, target, module or key
- CodecError: compression, decompression or cipher failure for one artifact
- StorageError: object storage operation failure
- DriverError: driver subprocess failure or malformed driver output
"""


class MiniBackupError(Exception):
    """Base class for all mini-backup errors."""
    pass


class ConfigurationError(MiniBackupError):
    """Raised when configuration is missing or invalid."""
    pass


class CodecError(MiniBackupError):
    """Raised when an artifact cannot be transformed."""
    pass


class CompressionError(CodecError):
    """Raised when archive creation or extraction fails."""
    pass


class CryptoError(CodecError):
    """Raised when encryption or decryption fails."""
    pass


class StorageError(MiniBackupError):
    """Raised when storage operation fails."""
    pass


class DriverError(MiniBackupError):
    """Raised when a driver process fails or returns an unusable result."""
    pass
