import os
import logging
import threading
from logging.handlers import RotatingFileHandler
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import ConfigurationError
from .models import BackupDefinition, StorageTarget
from .backup.invoker import PluginInvoker
from .backup.modules import ModuleRegistry
from .backup.storage import S3Storage
from .utils.crypto import ArtifactCipher


__version__ = '1.0.0'


def configure_logging(config: Mapping[str, Any]):
    """Configure application logging"""

    # Set log level based on environment
    debug = config.get('DEBUG', False) or config.get('LOG_LEVEL') == 'debug'
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    log_file = config.get('LOG_FILE')
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    logger = logging.getLogger('minibackup')
    logger.setLevel(log_level)
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


class Runtime:
    """
    Wired collaborators shared by every run: configuration, definitions,
    storage targets, module registry, plugin invoker and cipher.
    """

    def __init__(
        self,
        config: Dict[str, Any],
        definitions: Mapping[str, BackupDefinition],
        targets: List[StorageTarget],
        registry: ModuleRegistry,
        cipher: ArtifactCipher,
        storage_factory: Optional[Callable] = None
    ):
        self.config = config
        self.definitions = definitions
        self.targets = list(targets)
        self.registry = registry
        self.invoker = PluginInvoker(registry)
        self.cipher = cipher
        self.storage_factory = storage_factory or self._build_storage
        self._storages = {}
        self._storages_lock = threading.Lock()

    def get_definition(self, name: str) -> BackupDefinition:
        """
        Raises:
            ConfigurationError: If no definition has this name
        """
        definition = self.definitions.get(name)
        if definition is None:
            raise ConfigurationError(f"Backup definition not found: {name}")
        return definition

    def get_target(self, name: Optional[str] = None) -> StorageTarget:
        """
        Resolve a storage target by name, or the first configured one.

        Raises:
            ConfigurationError: If no target is configured or the name is unknown
        """
        if not self.targets:
            raise ConfigurationError("No storage target configured")
        if name is None:
            return self.targets[0]

        for target in self.targets:
            if target.name == name:
                return target
        raise ConfigurationError(f"Unknown storage target: {name}")

    def storage_for(self, target: StorageTarget) -> S3Storage:
        """Client for a target, built once and reused across runs."""
        with self._storages_lock:
            storage = self._storages.get(target.name)
            if storage is None:
                storage = self.storage_factory(target)
                self._storages[target.name] = storage
            return storage

    def _build_storage(self, target: StorageTarget) -> S3Storage:
        return S3Storage.for_target(
            target,
            credentials_file=self.config.get('AWS_CREDENTIALS_FILE'),
            profile_prefix=self.config.get('PROFILE_PREFIX', '')
        )


def create_runtime(config_name: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None) -> Runtime:
    """
    Runtime factory.

    Args:
        config_name: Key of ``minibackup.config.config`` (default: MINIBACKUP_ENV or production)
        overrides: Values replacing configuration keys

    Raises:
        ConfigurationError: If definitions, targets or the AES key are invalid
    """
    from .config import config, config_to_dict
    from .definitions import load_definitions, load_targets
    from .utils.crypto import hex_key_provider

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('MINIBACKUP_ENV', 'production')
    if config_name not in config:
        raise ConfigurationError(f"Unknown configuration: {config_name}")

    settings = config_to_dict(config[config_name])
    settings.update(overrides or {})

    # Configure logging
    configure_logging(settings)
    logger = logging.getLogger('minibackup')

    definitions = load_definitions(settings['BACKUP_CONFIG_PATH'])
    targets = load_targets(settings['SERVER_CONFIG_PATH'])
    if not targets:
        logger.warning("No storage target configured; backups will fail until one is added")

    cipher = ArtifactCipher(hex_key_provider(settings['AES_KEY']))
    registry = ModuleRegistry(settings['MODULES_DIR'])

    logger.info(f"Runtime ready ({config_name}): {len(definitions)} definition(s), {len(targets)} target(s)")
    return Runtime(settings, definitions, targets, registry, cipher)
