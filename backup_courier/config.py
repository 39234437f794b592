"""
Configuration loading for Backup Courier.

Configuration is read from a YAML file and may be overridden by environment
variables, so deployments that only ship a .env file keep working. The result
is an immutable PipelineConfig that is validated before any side effect.
"""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import dotenv_values

from .errors import ConfigurationError


COMPRESSION_FORMATS = ('tar.gz', 'tar.bz2', 'tar.xz', 'none', 'zip')
# Stages that accept a deadline
TIMEOUT_STAGES = ('dump', 'encrypt', 'deliver')
ENDPOINT_KINDS = {
    'telegram': ('bot_token', 'chat_id'),
    's3': ('bucket', 'access_key', 'secret_key'),
}

DEFAULT_RUN_ID_FORMAT = '%Y-%m-%d_%H-%M-%S'
DEFAULT_KDF_ITERATIONS = 480000
ENV_FILENAME = '.env'

# Environment variable -> configuration key
ENV_OVERRIDES = {
    'BACKUP_DIR': 'staging_dir',
    'SOURCE_PATHS': 'source_paths',
    'DOCKER_CONTAINER': 'db_service',
    'PG_USER': 'db_user',
    'PG_PASSWORD': 'db_password',
    'PG_DB': 'db_name',
    'BACKUP_PASSPHRASE': 'encryption_passphrase',
    'BACKUP_HOST_NAME': 'host_name',
    'BACKUP_HISTORY_DB': 'history_db',
    'BACKUP_LOG_FILE': 'log_file',
}


@dataclass(frozen=True)
class DatabaseConfig:
    """Connection descriptor for a database running inside a container."""
    service: str
    user: str
    name: str
    password: Optional[str] = field(default=None, repr=False)
    docker_binary: str = 'docker'
    dump_binary: str = 'pg_dump'


@dataclass(frozen=True)
class RemoteEndpoint:
    """Delivery target: 'telegram' or 's3' plus its options."""
    kind: str
    options: Mapping[str, Any] = field(default_factory=dict, repr=False)

    def describe(self) -> str:
        if self.kind == 'telegram':
            return f"telegram chat {self.options.get('chat_id')}"
        return f"s3://{self.options.get('bucket')}/{self.options.get('prefix', '')}"


@dataclass(frozen=True)
class PipelineConfig:
    """Immutable configuration resolved once per run."""
    staging_dir: Path
    remote_endpoint: RemoteEndpoint
    source_paths: Tuple[Path, ...] = ()
    exclude_patterns: Tuple[str, ...] = ()
    database: Optional[DatabaseConfig] = None
    encryption_passphrase: Optional[str] = field(default=None, repr=False)
    run_id_format: str = DEFAULT_RUN_ID_FORMAT
    archive_prefix: str = 'backup'
    compression_format: str = 'tar.gz'
    stage_timeouts: Mapping[str, float] = field(default_factory=dict)
    host_name: str = field(default_factory=socket.gethostname)
    history_db: Optional[str] = None
    log_file: Optional[str] = None
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS

    @property
    def encryption_enabled(self) -> bool:
        return self.encryption_passphrase is not None

    @property
    def lock_path(self) -> Path:
        """Lock file sitting next to the staging directory."""
        return self.staging_dir.parent / f".{self.staging_dir.name}.lock"

    def timeout_for(self, stage: str) -> Optional[float]:
        return self.stage_timeouts.get(stage)

    def __post_init__(self):
        validate_config(self)


def validate_config(config: PipelineConfig):
    """
    Check that a configuration is complete and consistent.

    Raises:
        ConfigurationError: On the first problem found
    """
    if not str(config.staging_dir).strip():
        raise ConfigurationError("staging_dir is required")

    if not config.source_paths and config.database is None:
        raise ConfigurationError("Nothing to back up: configure source_paths and/or a database")

    names = [Path(p).name for p in config.source_paths]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"Source paths must have distinct folder names: {', '.join(duplicates)}")
    if any(not name for name in names):
        raise ConfigurationError("Filesystem root cannot be used as a source path")

    # A staging directory inside a source would be copied into itself
    staging = Path(config.staging_dir).expanduser().resolve()
    for source in config.source_paths:
        source_root = Path(source).expanduser().resolve()
        if staging == source_root or source_root in staging.parents:
            raise ConfigurationError(
                f"staging_dir {config.staging_dir} must not be inside source path {source}"
            )

    if config.database is not None:
        for attr in ('service', 'user', 'name'):
            if not getattr(config.database, attr):
                raise ConfigurationError(f"Database configuration is missing '{attr}'")

    endpoint = config.remote_endpoint
    if endpoint.kind not in ENDPOINT_KINDS:
        raise ConfigurationError(
            f"Invalid remote endpoint type: {endpoint.kind}. "
            f"Valid options: {list(ENDPOINT_KINDS.keys())}"
        )
    missing = [key for key in ENDPOINT_KINDS[endpoint.kind] if not endpoint.options.get(key)]
    if missing:
        raise ConfigurationError(f"Remote endpoint '{endpoint.kind}' is missing: {', '.join(missing)}")

    if config.encryption_passphrase is not None and not config.encryption_passphrase:
        raise ConfigurationError("encryption_passphrase must not be empty when set")

    if config.compression_format not in COMPRESSION_FORMATS:
        raise ConfigurationError(
            f"Invalid compression format: {config.compression_format}. "
            f"Valid options: {list(COMPRESSION_FORMATS)}"
        )

    for stage, seconds in config.stage_timeouts.items():
        if stage not in TIMEOUT_STAGES:
            raise ConfigurationError(f"Unknown stage in stage_timeouts: {stage}")
        if seconds is None or seconds <= 0:
            raise ConfigurationError(f"Timeout for stage '{stage}' must be positive")

    if config.kdf_iterations < 1:
        raise ConfigurationError("kdf_iterations must be positive")

    if not config.run_id_format or '/' in config.run_id_format:
        raise ConfigurationError("run_id_format must be a non-empty strftime template without '/'")


def find_env_file(config_path: Optional[str] = None, env_file: Optional[str] = None) -> Optional[Path]:
    """
    Locate the .env file for a deployment.

    An explicit env_file must exist. Otherwise a `.env` next to the
    configuration file is used when present.

    Raises:
        ConfigurationError: If an explicit env_file does not exist
    """
    if env_file:
        path = Path(env_file).expanduser()
        if not path.is_file():
            raise ConfigurationError(f"Environment file not found: {path}")
        return path
    if config_path:
        path = Path(config_path).expanduser().parent / ENV_FILENAME
        if path.is_file():
            return path
    return None


def read_environment(
    config_path: Optional[str] = None,
    env_file: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Merge variables from the .env file with the process environment.

    Variables already set in the environment win over the file, like
    python-dotenv's load_dotenv() without override.
    """
    environ = os.environ if environ is None else environ
    merged: Dict[str, str] = {}

    path = find_env_file(config_path, env_file)
    if path is not None:
        merged.update({key: value for key, value in dotenv_values(path).items() if value is not None})

    merged.update(environ)
    return merged


def load_config(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[str] = None
) -> PipelineConfig:
    """
    Load configuration from a YAML file with environment overrides.

    Args:
        path: Path to YAML config file (optional when everything comes from the environment)
        environ: Environment mapping (defaults to os.environ)
        env_file: .env file with KEY=value overrides (defaults to `.env` beside the config)

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigurationError: If a file cannot be read or the result is invalid
    """
    environ = read_environment(path, env_file, environ)
    data: Dict[str, Any] = {}

    if path:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        try:
            with open(config_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read {config_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"Top level of {config_path} must be a mapping")

    _apply_env_overrides(data, environ)
    return config_from_dict(data)


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]):
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == '':
            continue
        if key == 'source_paths':
            data[key] = [p for p in value.split(os.pathsep) if p]
        else:
            data[key] = value

    token = environ.get('TELEGRAM_BOT_TOKEN')
    chat_id = environ.get('TELEGRAM_CHAT_ID')
    if token or chat_id:
        endpoint = data.get('remote_endpoint')
        if not isinstance(endpoint, dict) or endpoint.get('type', 'telegram') != 'telegram':
            endpoint = {'type': 'telegram'}
        endpoint = dict(endpoint)
        if token:
            endpoint['bot_token'] = token
        if chat_id:
            endpoint['chat_id'] = chat_id
        data['remote_endpoint'] = endpoint


def config_from_dict(data: Mapping[str, Any]) -> PipelineConfig:
    """
    Build a PipelineConfig from a plain mapping.

    Raises:
        ConfigurationError: If required keys are missing or values are invalid
    """
    if not data.get('staging_dir'):
        raise ConfigurationError("Missing required configuration key: staging_dir")
    if not data.get('remote_endpoint'):
        raise ConfigurationError("Missing required configuration key: remote_endpoint")

    return PipelineConfig(
        staging_dir=Path(str(data['staging_dir'])).expanduser().absolute(),
        remote_endpoint=_parse_endpoint(data['remote_endpoint']),
        source_paths=tuple(Path(str(p)).expanduser() for p in _as_list(data.get('source_paths'))),
        exclude_patterns=tuple(str(p) for p in _as_list(data.get('exclude_patterns'))),
        database=_parse_database(data),
        encryption_passphrase=_optional_str(data.get('encryption_passphrase')),
        run_id_format=str(data.get('run_id_format') or DEFAULT_RUN_ID_FORMAT),
        archive_prefix=str(data.get('archive_prefix') or 'backup'),
        compression_format=str(data.get('compression_format') or 'tar.gz'),
        stage_timeouts=_parse_timeouts(data.get('stage_timeouts')),
        host_name=str(data.get('host_name') or socket.gethostname()),
        history_db=_optional_str(data.get('history_db')),
        log_file=_optional_str(data.get('log_file')),
        kdf_iterations=_parse_int(data.get('kdf_iterations', DEFAULT_KDF_ITERATIONS), 'kdf_iterations'),
    )


def _parse_endpoint(raw: Any) -> RemoteEndpoint:
    if not isinstance(raw, dict):
        raise ConfigurationError("remote_endpoint must be a mapping")
    options = dict(raw)
    kind = str(options.pop('type', 'telegram')).lower()
    if 'chat_id' in options and options['chat_id'] is not None:
        options['chat_id'] = str(options['chat_id'])
    return RemoteEndpoint(kind=kind, options=options)


def _parse_database(data: Mapping[str, Any]) -> Optional[DatabaseConfig]:
    nested = data.get('database') or {}
    if not isinstance(nested, dict):
        raise ConfigurationError("database must be a mapping")

    service = data.get('db_service') or nested.get('service')
    user = data.get('db_user') or nested.get('user')
    name = data.get('db_name') or nested.get('name')
    password = data.get('db_password') or nested.get('password')

    if not any((service, user, name)):
        return None

    return DatabaseConfig(
        service=str(service or ''),
        user=str(user or ''),
        name=str(name or ''),
        password=_optional_str(password),
        docker_binary=str(nested.get('docker_binary') or 'docker'),
        dump_binary=str(nested.get('dump_binary') or 'pg_dump'),
    )


def _parse_timeouts(raw: Any) -> Dict[str, float]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError("stage_timeouts must be a mapping of stage name to seconds")
    timeouts = {}
    for stage, value in raw.items():
        try:
            timeouts[str(stage)] = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Timeout for stage '{stage}' is not a number: {value!r}")
    return timeouts


def _parse_int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key} must be an integer, got {value!r}")


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)
