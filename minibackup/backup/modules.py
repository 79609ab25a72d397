"""
Driver module registry.

A module is a directory holding a ``module.yaml`` manifest::

    name: folder-backup
    version: 1.2.0
    type: folder
    enable: true
    bin: folder-backup
    output: structured   # or "streamed"

Enabled modules are registered by ``type``; the backup definition's type
selects the driver.
"""

import os
import re
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

import yaml

from ..errors import ConfigurationError


logger = logging.getLogger(__name__)

MANIFEST_NAME = 'module.yaml'
OUTPUT_MODES = ('structured', 'streamed')

SEMVER_PATTERN = re.compile(
    r'^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)'
    r'(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$'
)


@dataclass(frozen=True)
class Module:
    """One driver module loaded from its manifest."""

    name: str
    version: str
    type: str
    bin: str
    directory: str
    enable: bool = True
    output: str = 'structured'

    @property
    def bin_path(self) -> str:
        """Absolute-or-relative path of the driver executable."""
        return os.path.join(self.directory, self.bin)

    @property
    def streamed(self) -> bool:
        return self.output == 'streamed'

    @classmethod
    def from_manifest(cls, directory: str, manifest: Dict) -> 'Module':
        """
        Validate a parsed manifest.

        Raises:
            ConfigurationError: If a required field is missing or invalid
        """
        if not isinstance(manifest, dict):
            raise ConfigurationError(f"{MANIFEST_NAME} in {directory} must be a mapping")

        for key in ('name', 'version', 'type', 'bin'):
            if not manifest.get(key):
                raise ConfigurationError(f"{MANIFEST_NAME} in {directory} is missing '{key}'")

        version = str(manifest['version'])
        if not SEMVER_PATTERN.match(version):
            raise ConfigurationError(
                f"{MANIFEST_NAME} in {directory} has an invalid version: {version}"
            )

        output = manifest.get('output') or 'structured'
        if output not in OUTPUT_MODES:
            raise ConfigurationError(
                f"{MANIFEST_NAME} in {directory} has an invalid output mode: {output}. "
                f"Valid options: {', '.join(OUTPUT_MODES)}"
            )

        return cls(
            name=str(manifest['name']),
            version=version,
            type=str(manifest['type']),
            bin=str(manifest['bin']),
            directory=directory,
            enable=bool(manifest.get('enable', False)),
            output=output
        )


class ModuleRegistry:
    """
    Registry of driver modules keyed by backup type.

    ``discover`` scans the modules root once; the first module found for a
    type (in sorted directory order) wins and later duplicates are ignored.
    ``register`` rejects a type that is already taken.
    """

    def __init__(self, modules_dir: str):
        self.modules_dir = modules_dir
        self._modules: Dict[str, Module] = {}
        self._registered: Dict[str, Module] = {}
        self._discovered = False
        self._lock = threading.Lock()

    def discover(self, force: bool = False) -> Dict[str, Module]:
        """
        Scan the modules root and register every enabled, valid module.

        Args:
            force: Rescan even if the registry was already populated

        Returns:
            Mapping of type to module

        Raises:
            ConfigurationError: If the modules root cannot be read
        """
        with self._lock:
            if self._discovered and not force:
                return dict(self._modules)

            try:
                entries = sorted(os.listdir(self.modules_dir))
            except OSError as e:
                raise ConfigurationError(f"Failed to read modules directory {self.modules_dir}: {e}")

            # Explicit registrations survive a rescan
            found: Dict[str, Module] = dict(self._registered)
            for entry in entries:
                module_dir = os.path.join(self.modules_dir, entry)
                if not os.path.isdir(module_dir):
                    continue

                module = self._load(module_dir)
                if module is None:
                    continue

                if module.type in found:
                    logger.warning(
                        f"Ignoring module {module.name} from {module_dir}: type '{module.type}' "
                        f"already provided by {found[module.type].name}"
                    )
                    continue

                found[module.type] = module
                logger.info(
                    f"Loaded module: {module.name} (type {module.type}, version {module.version}) "
                    f"from {module_dir}"
                )

            self._modules = found
            self._discovered = True
            return dict(self._modules)

    def _load(self, module_dir: str) -> Optional[Module]:
        manifest_path = os.path.join(module_dir, MANIFEST_NAME)
        if not os.path.isfile(manifest_path):
            logger.info(f"No {MANIFEST_NAME} found in {module_dir}, skipping")
            return None

        try:
            with open(manifest_path) as f:
                manifest = yaml.safe_load(f)
            module = Module.from_manifest(module_dir, manifest)
        except (OSError, yaml.YAMLError, ConfigurationError) as e:
            logger.error(f"Failed to load {manifest_path}: {e}")
            return None

        if not module.enable:
            logger.info(f"Module {module.name} in {module_dir} is disabled, skipping")
            return None

        return module

    def register(self, module: Module):
        """
        Register a module explicitly.

        The modules root is discovered first, so a type provided on disk is
        taken whether or not discovery already ran.

        Raises:
            ConfigurationError: If a module is already registered for its type,
                or the modules root cannot be read
        """
        self.discover()
        with self._lock:
            existing = self._modules.get(module.type)
            if existing is not None:
                raise ConfigurationError(
                    f"A module is already registered for type '{module.type}': {existing.name}"
                )
            self._registered[module.type] = module
            self._modules[module.type] = module

    def get(self, type_name: str) -> Module:
        """
        Resolve the module for a backup type, discovering on first use.

        Raises:
            ConfigurationError: If no enabled module handles the type
        """
        modules = self.discover()
        module = modules.get(type_name)
        if module is None:
            raise ConfigurationError(f"No module registered for backup type: {type_name}")
        return module

    def modules(self) -> List[Module]:
        """List registered modules sorted by type."""
        return [module for _, module in sorted(self.discover().items())]
