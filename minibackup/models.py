"""
Data model for backup definitions, storage targets and run results.

Definitions and targets are loaded once per run and never mutated; they are
frozen dataclasses. Driver parameters are a tagged union selected by the
definition's ``type`` discriminant (see ``register_params``).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type

from .errors import ConfigurationError


class Tier(Enum):
    """Storage tier: selects the upload storage class and the retention threshold."""

    STANDARD = 'standard'
    GLACIER = 'glacier'

    @classmethod
    def from_glacier_mode(cls, glacier_mode: bool) -> 'Tier':
        return cls.GLACIER if glacier_mode else cls.STANDARD

    @property
    def storage_class(self) -> str:
        """Storage class used when uploading to this tier."""
        return 'GLACIER' if self is Tier.GLACIER else 'STANDARD'

    @property
    def owned_storage_classes(self) -> Tuple[str, ...]:
        if self is Tier.GLACIER:
            return ('GLACIER', 'DEEP_ARCHIVE')
        return ('STANDARD',)

    def matches(self, storage_class: Optional[str]) -> bool:
        """
        Check whether an object's actual storage class belongs to this tier.

        A missing storage class is reported by S3 for STANDARD objects.
        """
        return (storage_class or 'STANDARD') in self.owned_storage_classes


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention in days per tier. ``None`` or ``<= 0`` disables the sweep for that tier."""

    standard_days: Optional[int] = None
    glacier_days: Optional[int] = None

    def days_for(self, tier: Tier) -> Optional[int]:
        return self.glacier_days if tier is Tier.GLACIER else self.standard_days


@dataclass(frozen=True)
class Schedule:
    """Cron expressions; each is optional."""

    standard: Optional[str] = None
    glacier: Optional[str] = None


# ---------------------------------------------------------------------------
# Driver parameters (tagged union)
# ---------------------------------------------------------------------------

PARAMS_TYPES: Dict[str, Type['DriverParams']] = {}


def register_params(type_name: str):
    """
    Class decorator registering a DriverParams variant under its discriminant.

    Raises:
        ConfigurationError: If the type name is already registered
    """
    def decorator(cls):
        if type_name in PARAMS_TYPES:
            raise ConfigurationError(f"Parameter variant already registered for type: {type_name}")
        cls.TYPE = type_name
        PARAMS_TYPES[type_name] = cls
        return cls
    return decorator


def parse_params(type_name: str, raw: Any) -> 'DriverParams':
    """
    Build the typed parameters for a backup type from its raw configuration block.

    Raises:
        ConfigurationError: If the type is unknown or the block is invalid
    """
    variant = PARAMS_TYPES.get(type_name)
    if variant is None:
        raise ConfigurationError(
            f"Unsupported backup type: {type_name}. "
            f"Valid options: {sorted(PARAMS_TYPES)}"
        )
    return variant.from_config(raw)


def _require_mapping(type_name: str, raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration for type '{type_name}' must be a mapping")
    return dict(raw)


def _string_list(type_name: str, key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not value or not all(isinstance(v, str) and v for v in value):
        raise ConfigurationError(f"'{key}' for type '{type_name}' must be a non-empty list of strings")
    return list(value)


@dataclass(frozen=True)
class DriverParams:
    """Base class of the parameter variants."""

    TYPE: ClassVar[str] = ''
    # Restore hands the decrypted .gz straight to the driver when True
    accepts_compressed: ClassVar[bool] = False

    @classmethod
    def from_config(cls, raw: Any) -> 'DriverParams':
        raise NotImplementedError

    def to_args(self) -> Any:
        """Driver-specific JSON value forwarded under the type key."""
        raise NotImplementedError


@register_params('folder')
@dataclass(frozen=True)
class FolderParams(DriverParams):
    folders: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, raw):
        # Accepts the bare list form (`folder: [...]`) or `{paths: [...]}`
        if isinstance(raw, dict):
            raw = raw.get('paths')
        return cls(folders=tuple(_string_list('folder', 'paths', raw)))

    def to_args(self):
        return list(self.folders)


@register_params('mysql')
@dataclass(frozen=True)
class MysqlParams(DriverParams):
    host: str = ''
    user: str = ''
    databases: Tuple[str, ...] = ()
    port: str = '3306'
    password: str = ''
    ssl: str = 'false'
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw):
        data = _require_mapping('mysql', raw)
        host = data.pop('host', None)
        user = data.pop('user', None)
        if not host or not user:
            raise ConfigurationError("MySQL configuration requires 'host' and 'user'")
        return cls(
            host=str(host),
            user=str(user),
            databases=tuple(_string_list('mysql', 'databases', data.pop('databases', None))),
            port=str(data.pop('port', '3306')),
            password=str(data.pop('password', '') or ''),
            ssl=str(data.pop('ssl', 'false')).lower(),
            extra=data
        )

    def to_args(self):
        return {
            **self.extra,
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'databases': list(self.databases),
            'ssl': self.ssl
        }


@register_params('mongo')
@dataclass(frozen=True)
class MongoParams(DriverParams):
    accepts_compressed: ClassVar[bool] = True

    databases: Tuple[str, ...] = ()
    uri: Optional[str] = None
    host: Optional[str] = None
    port: str = '27017'
    user: Optional[str] = None
    password: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw):
        data = _require_mapping('mongo', raw)
        uri = data.pop('uri', None)
        host = data.pop('host', None)
        if not uri and not host:
            raise ConfigurationError("Mongo configuration requires 'uri' or 'host'")
        return cls(
            databases=tuple(_string_list('mongo', 'databases', data.pop('databases', None))),
            uri=uri,
            host=host,
            port=str(data.pop('port', '27017')),
            user=data.pop('user', None),
            password=data.pop('password', None),
            extra=data
        )

    def to_args(self):
        args = dict(self.extra)
        args['databases'] = list(self.databases)
        args['port'] = self.port
        for key in ('uri', 'host', 'user', 'password'):
            value = getattr(self, key)
            if value is not None:
                args[key] = value
        return args


@register_params('s3')
@dataclass(frozen=True)
class S3Params(DriverParams):
    endpoint: str = ''
    buckets: Tuple[str, ...] = ()
    region: str = 'us-east-1'
    access_key: str = ''
    secret_key: str = ''
    path_style: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw):
        data = _require_mapping('s3', raw)
        endpoint = data.pop('endpoint', None)
        if not endpoint:
            raise ConfigurationError("S3 configuration requires 'endpoint'")
        return cls(
            endpoint=endpoint,
            buckets=tuple(_string_list('s3', 'bucket', data.pop('bucket', None))),
            region=data.pop('region', 'us-east-1'),
            access_key=data.pop('ACCESS_KEY', data.pop('access_key', '')),
            secret_key=data.pop('SECRET_KEY', data.pop('secret_key', '')),
            path_style=bool(data.pop('pathStyle', data.pop('path_style', False))),
            extra=data
        )

    def to_args(self):
        return {
            **self.extra,
            'endpoint': self.endpoint,
            'bucket': list(self.buckets),
            'region': self.region,
            'ACCESS_KEY': self.access_key,
            'SECRET_KEY': self.secret_key,
            'pathStyle': self.path_style
        }


@register_params('kubernetes')
@dataclass(frozen=True)
class KubernetesParams(DriverParams):
    kubeconfig: str = ''
    cluster: Dict[str, Any] = field(default_factory=dict)
    volumes: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_config(cls, raw):
        data = _require_mapping('kubernetes', raw)
        kubeconfig = data.pop('kubeconfig', None)
        if not kubeconfig:
            raise ConfigurationError("Kubernetes configuration requires 'kubeconfig'")
        cluster = data.pop('cluster', None) or {}
        volumes = data.pop('volumes', None) or {}
        if not isinstance(cluster, dict) or not isinstance(volumes, dict):
            raise ConfigurationError("Kubernetes 'cluster' and 'volumes' must be mappings")
        return cls(kubeconfig=kubeconfig, cluster=cluster, volumes=volumes, extra=data)

    def to_args(self):
        return {
            **self.extra,
            'kubeconfig': self.kubeconfig,
            'cluster': self.cluster,
            'volumes': self.volumes
        }


# ---------------------------------------------------------------------------
# Definitions and targets
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackupDefinition:
    """One named backup: driver type, its parameters, paths, retention and schedule."""

    name: str
    type: str
    params: DriverParams
    local_path: str
    remote_prefix: str
    retention: RetentionPolicy = RetentionPolicy()
    schedule: Schedule = Schedule()

    @property
    def accepts_compressed(self) -> bool:
        return self.params.accepts_compressed


@dataclass(frozen=True)
class StorageTarget:
    """One S3-compatible backend."""

    name: str
    bucket: str
    region: str = 'us-east-1'
    endpoint: Optional[str] = None
    access_key: str = ''
    secret_key: str = ''
    path_style: bool = False

    def profile_name(self, prefix: str) -> str:
        """Name of the shared-credentials profile holding this target's keys."""
        return f"{prefix}-{self.name}" if prefix else self.name

    def __repr__(self):
        return f'<StorageTarget {self.name} bucket={self.bucket} region={self.region}>'


# ---------------------------------------------------------------------------
# Driver and run results
# ---------------------------------------------------------------------------

@dataclass
class PluginResult:
    """
    Declared result of a driver run.

    ``paths`` is filled for backups, ``success`` for restores. ``logs`` maps a
    severity name to the messages the driver reported.
    """

    paths: List[str] = field(default_factory=list)
    success: bool = False
    logs: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class ArtifactOutcome:
    """What happened to one raw artifact of a backup run."""

    raw_path: str
    remote_key: Optional[str] = None
    # target name -> error message, or None on success
    uploads: Dict[str, Optional[str]] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def uploaded_to(self) -> List[str]:
        return [name for name, error in self.uploads.items() if error is None]


@dataclass
class RunResult:
    """Outcome of one backup or restore run."""

    name: str
    status: str = 'running'
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == 'success'


@dataclass
class BackupRunResult(RunResult):
    glacier_mode: bool = False
    artifacts: List[ArtifactOutcome] = field(default_factory=list)


@dataclass
class RestoreRunResult(RunResult):
    remote_key: Optional[str] = None
    target: Optional[str] = None
    restored_path: Optional[str] = None
