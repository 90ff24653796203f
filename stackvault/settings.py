"""
Immutable runtime settings handed to the backup components.

The Flask config classes in ``stackvault.config`` read the environment; this
module turns the resulting mapping into a frozen dataclass built once per
process. Components receive it explicitly and never consult ``os.environ``.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from stackvault.exceptions import ConfigurationInvalid


DEFAULT_S3_ENDPOINT = 'https://s3.amazonaws.com'


def parse_bool(value: Any, default: bool = False) -> bool:
    """Interpret common truthy strings the way shell env files spell them."""
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_int(name: str, value: Any, default: int) -> int:
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationInvalid(f"{name} must be an integer, got {value!r}")


@dataclass(frozen=True)
class RemoteSettings:
    """S3-compatible remote sync settings"""
    enabled: bool = False
    bucket: Optional[str] = None
    region: str = 'us-east-1'
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None

    @property
    def effective_endpoint(self) -> Optional[str]:
        """Endpoint override, or None when it matches the public default."""
        if self.endpoint_url and self.endpoint_url.rstrip('/') != DEFAULT_S3_ENDPOINT:
            return self.endpoint_url
        return None


@dataclass(frozen=True)
class TargetSettings:
    """Container name and credentials for one managed data service"""
    container: str
    user: Optional[str] = None
    password: Optional[str] = None
    port: Optional[int] = None
    tls: bool = False
    data_path: Optional[str] = None


@dataclass(frozen=True)
class BackupSettings:
    """Everything the backup, restore, retention and schedule code needs."""
    backup_root: Path
    retention_days: int = 30
    compression: bool = True
    targets: Tuple[str, ...] = ('mysql', 'postgres', 'redis', 'clickhouse')
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    target_settings: Dict[str, TargetSettings] = field(default_factory=dict)
    command_timeout: int = 3600
    snapshot_timeout: int = 300
    log_dir: Path = Path('logs')
    cron_dir: Path = Path('cron')
    schedule_workdir: Path = Path('.')
    schedule_executable: str = 'stackvault'

    def target(self, kind: str) -> TargetSettings:
        """
        Get settings for a target kind.

        Raises:
            ConfigurationInvalid: If the kind has no settings
        """
        try:
            return self.target_settings[kind]
        except KeyError:
            raise ConfigurationInvalid(f"No settings for target: {kind}")

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build settings from a Flask config (or any mapping).

        Args:
            config: Mapping holding the upper-case configuration keys

        Returns:
            BackupSettings instance

        Raises:
            ConfigurationInvalid: If a value is malformed
        """
        retention_days = _parse_int('BACKUP_RETENTION_DAYS', config.get('BACKUP_RETENTION_DAYS'), 30)
        if retention_days < 0:
            raise ConfigurationInvalid("BACKUP_RETENTION_DAYS must be >= 0")

        raw_targets = config.get('BACKUP_TARGETS') or 'mysql,postgres,redis,clickhouse'
        if isinstance(raw_targets, str):
            raw_targets = [t.strip() for t in raw_targets.split(',') if t.strip()]
        known = ('mysql', 'postgres', 'redis', 'clickhouse')
        unknown = [t for t in raw_targets if t not in known]
        if unknown:
            raise ConfigurationInvalid(f"Unknown backup targets: {', '.join(unknown)}")
        # Keep the fixed batch order no matter how the list was written
        targets = tuple(t for t in known if t in raw_targets)

        remote = RemoteSettings(
            enabled=parse_bool(config.get('S3_BACKUP_ENABLED')),
            bucket=config.get('S3_BUCKET_NAME') or None,
            region=config.get('S3_REGION') or 'us-east-1',
            endpoint_url=config.get('S3_ENDPOINT_URL') or None,
            access_key_id=config.get('S3_ACCESS_KEY_ID') or None,
            secret_access_key=config.get('S3_SECRET_ACCESS_KEY') or None,
        )

        target_settings = {
            'mysql': TargetSettings(
                container=config.get('MYSQL_CONTAINER') or 'mysql',
                user=config.get('MYSQL_USER') or 'root',
                password=config.get('MYSQL_ROOT_PASSWORD') or 'password',
            ),
            'postgres': TargetSettings(
                container=config.get('POSTGRES_CONTAINER') or 'postgres',
                user=config.get('POSTGRES_USER') or 'postgres',
                password=config.get('POSTGRES_PASSWORD') or None,
            ),
            'redis': TargetSettings(
                container=config.get('REDIS_CONTAINER') or 'redis',
                password=config.get('REDIS_PASSWORD') or 'password',
                port=_parse_int('REDIS_PORT', config.get('REDIS_PORT'), 6380),
                tls=parse_bool(config.get('REDIS_TLS'), default=True),
                data_path=config.get('REDIS_DATA_PATH') or '/data/dump.rdb',
            ),
            'clickhouse': TargetSettings(
                container=config.get('CLICKHOUSE_CONTAINER') or 'tinybird',
                user=config.get('CLICKHOUSE_USER') or None,
                password=config.get('CLICKHOUSE_PASSWORD') or None,
            ),
        }

        return cls(
            backup_root=Path(config.get('BACKUP_LOCAL_DIR') or './backups'),
            retention_days=retention_days,
            compression=parse_bool(config.get('BACKUP_COMPRESSION'), default=True),
            targets=targets,
            remote=remote,
            target_settings=target_settings,
            command_timeout=_parse_int('COMMAND_TIMEOUT', config.get('COMMAND_TIMEOUT'), 3600),
            snapshot_timeout=_parse_int('SNAPSHOT_TIMEOUT', config.get('SNAPSHOT_TIMEOUT'), 300),
            log_dir=Path(config.get('LOG_DIR') or 'logs'),
            cron_dir=Path(config.get('CRON_DIR') or 'cron'),
            schedule_workdir=Path(config.get('SCHEDULE_WORKDIR') or '.').absolute(),
            schedule_executable=config.get('SCHEDULE_EXECUTABLE') or 'stackvault',
        )
