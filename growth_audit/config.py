"""
Table Growth Audit - Configuration Management

Settings are merged from three sources, later ones winning:

    environment (GROWTH_*, DD_*, SUMO_*)  <  YAML file  <  command line

The merged settings are validated into an immutable AuditConfig that is
passed explicitly through the pipeline.

Config file example:
```yaml
environment: production
regions:
  - us-east-1
  - eu-west-1

sink:
  type: datadog

datadog:
  api_key: ${DD_API_KEY}
  app_key: ${DD_APP_KEY}
```
"""
import logging
import os
import re
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .constants import (
    DEFAULT_CATALOG,
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_CREDENTIAL_TAG_KEY,
    DEFAULT_DATADOG_API_URL,
    DEFAULT_DB_PORT,
    DEFAULT_FILTER_TAG_KEY,
    DEFAULT_FILTER_TAG_VALUE,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_INSTANCE_WORKERS,
    DEFAULT_METRIC_NAMESPACE,
    DEFAULT_PAGE_SIZE,
    DEFAULT_REGION_WORKERS,
    DEFAULT_REGIONS,
    DEFAULT_SCHEMA_WORKERS,
    DEFAULT_SCHEMAS_TAG_KEY,
    DEFAULT_SHIP_WORKERS,
    DEFAULT_SUMO_CATEGORY_PREFIX,
    DEFAULT_TAG_WORKERS,
    MAX_PAGE_SIZE,
    MIN_PAGE_SIZE,
    SINK_DATADOG,
    SINK_SUMOLOGIC,
    SINK_TYPES,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# Default config file locations (checked in order)
DEFAULT_CONFIG_PATHS = [
    './growth-audit.yaml',
    './growth-audit.yml',
    '~/.growth-audit/config.yaml',
    '~/.growth-audit/config.yml',
]

# Mapping from config keys to env vars
ENV_VAR_MAPPING = {
    'environment': 'GROWTH_ENVIRONMENT',
    'regions': 'GROWTH_REGIONS',
    'log_level': 'GROWTH_LOG_LEVEL',
    'debug': 'GROWTH_DEBUG',
    'output': 'GROWTH_OUTPUT',
    'tags.filter_key': 'GROWTH_FILTER_TAG_KEY',
    'tags.filter_value': 'GROWTH_FILTER_TAG_VALUE',
    'tags.schemas_key': 'GROWTH_SCHEMAS_TAG_KEY',
    'tags.credential_key': 'GROWTH_CREDENTIAL_TAG_KEY',
    'discovery.page_size': 'GROWTH_PAGE_SIZE',
    'db.port': 'GROWTH_DB_PORT',
    'db.catalog': 'GROWTH_DB_CATALOG',
    'db.connect_timeout': 'GROWTH_DB_CONNECT_TIMEOUT',
    'sink.type': 'GROWTH_SINK',
    'sink.enabled': 'GROWTH_SINK_ENABLED',
    'datadog.api_key': 'DD_API_KEY',
    'datadog.app_key': 'DD_APP_KEY',
    'datadog.api_url': 'DD_API_URL',
    'datadog.namespace': 'GROWTH_METRIC_NAMESPACE',
    'sumologic.url': 'SUMO_HTTP_URL',
    'sumologic.category_prefix': 'SUMO_CATEGORY_PREFIX',
    'workers.regions': 'GROWTH_REGION_WORKERS',
    'workers.tags': 'GROWTH_TAG_WORKERS',
    'workers.instances': 'GROWTH_INSTANCE_WORKERS',
    'workers.schemas': 'GROWTH_SCHEMA_WORKERS',
    'workers.shipments': 'GROWTH_SHIP_WORKERS',
    'http_timeout': 'GROWTH_HTTP_TIMEOUT',
}

_TRUE_VALUES = ('true', '1', 'yes', 'on')
_FALSE_VALUES = ('false', '0', 'no', 'off')


@dataclass(frozen=True)
class AuditConfig:
    """Validated settings for one audit run."""
    environment: str
    regions: Tuple[str, ...] = tuple(DEFAULT_REGIONS)
    log_level: str = "INFO"
    debug: bool = False
    output: Optional[str] = None

    filter_tag_key: str = DEFAULT_FILTER_TAG_KEY
    filter_tag_value: str = DEFAULT_FILTER_TAG_VALUE
    schemas_tag_key: str = DEFAULT_SCHEMAS_TAG_KEY
    credential_tag_key: str = DEFAULT_CREDENTIAL_TAG_KEY

    page_size: int = DEFAULT_PAGE_SIZE

    db_port: int = DEFAULT_DB_PORT
    db_catalog: str = DEFAULT_CATALOG
    db_connect_timeout: int = DEFAULT_CONNECT_TIMEOUT

    sink_type: str = SINK_DATADOG
    sink_enabled: bool = True
    datadog_api_key: str = field(default="", repr=False)
    datadog_app_key: str = field(default="", repr=False)
    datadog_api_url: str = DEFAULT_DATADOG_API_URL
    metric_namespace: str = DEFAULT_METRIC_NAMESPACE
    sumo_url: str = field(default="", repr=False)
    sumo_category_prefix: str = DEFAULT_SUMO_CATEGORY_PREFIX
    http_timeout: float = DEFAULT_HTTP_TIMEOUT

    region_workers: int = DEFAULT_REGION_WORKERS
    tag_workers: int = DEFAULT_TAG_WORKERS
    instance_workers: int = DEFAULT_INSTANCE_WORKERS
    schema_workers: int = DEFAULT_SCHEMA_WORKERS
    ship_workers: int = DEFAULT_SHIP_WORKERS

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level


def _substitute_env_vars(value: Any) -> Any:
    """Substitute ${ENV_VAR} patterns in string values."""
    if isinstance(value, str):
        # Pattern: ${VAR_NAME} or ${VAR_NAME:-default}
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replace(match):
            var_name = match.group(1)
            default = match.group(2) or ''
            return os.environ.get(var_name, default)

        return re.sub(pattern, replace, value)
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _get_nested(data: Dict, key_path: str, default: Any = None) -> Any:
    """Get a nested value from a dict using dot notation."""
    keys = key_path.split('.')
    value = data
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _set_nested(data: Dict, key_path: str, value: Any) -> None:
    """Set a nested value in a dict using dot notation."""
    keys = key_path.split('.')
    for key in keys[:-1]:
        data = data.setdefault(key, {})
    data[keys[-1]] = value


def _split_list(value: str) -> list:
    return [v.strip() for v in value.split(',') if v.strip()]


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # The file may hold API keys
    file_mode = path.stat().st_mode
    if file_mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning(f"Config file {config_path} has loose permissions. "
                       f"Consider: chmod 600 {config_path}")

    logger.info(f"Loading config from {path}")

    with open(path) as f:
        config = yaml.safe_load(f) or {}

    return _substitute_env_vars(config)


def find_default_config() -> Optional[str]:
    """Find a config file in default locations."""
    for path in DEFAULT_CONFIG_PATHS:
        expanded = Path(path).expanduser()
        if expanded.exists():
            return str(expanded)
    return None


def load_env_config() -> Dict[str, Any]:
    """Load configuration from environment variables."""
    config: Dict[str, Any] = {}

    for config_key, env_var in ENV_VAR_MAPPING.items():
        value = os.environ.get(env_var)
        if value is None or value == '':
            continue
        if config_key == 'regions':
            value = _split_list(value)
        _set_nested(config, config_key, value)

    return config


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Merge multiple config dicts. Later configs override earlier ones."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = merge_configs(result[key], value)
            elif value is not None:
                result[key] = value

    return result


def args_to_config(args) -> Dict[str, Any]:
    """Convert argparse args to config dict format."""
    config: Dict[str, Any] = {}

    arg_mapping = {
        'environment': 'environment',
        'regions': 'regions',
        'log_level': 'log_level',
        'output': 'output',
        'sink': 'sink.type',
        'page_size': 'discovery.page_size',
    }

    for arg_name, config_key in arg_mapping.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            if arg_name == 'regions' and isinstance(value, str):
                value = _split_list(value)
            _set_nested(config, config_key, value)

    if getattr(args, 'dry_run', False):
        _set_nested(config, 'sink.enabled', False)
    if getattr(args, 'debug', False):
        config['debug'] = True

    return config


def load_config(args=None) -> Dict[str, Any]:
    """
    Merge environment, config file and command-line settings.

    The file is --config when given, otherwise the first of
    DEFAULT_CONFIG_PATHS that exists. Pass the result to build_audit_config().
    """
    configs = []

    env_config = load_env_config()
    if env_config:
        logger.debug("Loaded config from environment variables")
        configs.append(env_config)

    config_path = getattr(args, 'config', None)
    if config_path:
        configs.append(load_config_file(config_path))
    else:
        default_config = find_default_config()
        if default_config:
            logger.info(f"Found default config file: {default_config}")
            configs.append(load_config_file(default_config))

    if args is not None:
        configs.append(args_to_config(args))

    return merge_configs(*configs)


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Could not parse boolean value for {key}: {value!r}")


def _parse_number(value: Any, key: str, cast=int, minimum: Optional[float] = None) -> Any:
    try:
        number = cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {key}: {value!r}", e) from e
    if minimum is not None and number < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {number}")
    return number


def build_audit_config(config: Dict[str, Any]) -> AuditConfig:
    """
    Validate a merged config dict and build an AuditConfig.

    Raises:
        ConfigurationError: if a required setting is missing or invalid
    """
    def get(key: str, default: Any = None) -> Any:
        value = _get_nested(config, key, default)
        return default if value in (None, '') else value

    environment = get('environment')
    if not environment:
        raise ConfigurationError(
            f"Required setting 'environment' is not set ({ENV_VAR_MAPPING['environment']})"
        )

    regions = get('regions', list(DEFAULT_REGIONS))
    if isinstance(regions, str):
        regions = _split_list(regions)
    if not regions:
        raise ConfigurationError("At least one region must be configured")

    page_size = _parse_number(get('discovery.page_size', DEFAULT_PAGE_SIZE), 'discovery.page_size')
    if not MIN_PAGE_SIZE <= page_size <= MAX_PAGE_SIZE:
        raise ConfigurationError(
            f"discovery.page_size must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}, got {page_size}"
        )

    sink_type = str(get('sink.type', SINK_DATADOG)).lower()
    if sink_type not in SINK_TYPES:
        raise ConfigurationError(f"Unknown sink type {sink_type!r}, expected one of {', '.join(SINK_TYPES)}")
    sink_enabled = _parse_bool(get('sink.enabled', True), 'sink.enabled')

    audit_config = AuditConfig(
        environment=str(environment),
        regions=tuple(regions),
        log_level=str(get('log_level', 'INFO')).upper(),
        debug=_parse_bool(get('debug', False), 'debug'),
        output=get('output'),
        filter_tag_key=str(get('tags.filter_key', DEFAULT_FILTER_TAG_KEY)),
        filter_tag_value=str(get('tags.filter_value', DEFAULT_FILTER_TAG_VALUE)),
        schemas_tag_key=str(get('tags.schemas_key', DEFAULT_SCHEMAS_TAG_KEY)),
        credential_tag_key=str(get('tags.credential_key', DEFAULT_CREDENTIAL_TAG_KEY)),
        page_size=page_size,
        db_port=_parse_number(get('db.port', DEFAULT_DB_PORT), 'db.port', minimum=1),
        db_catalog=str(get('db.catalog', DEFAULT_CATALOG)),
        db_connect_timeout=_parse_number(
            get('db.connect_timeout', DEFAULT_CONNECT_TIMEOUT), 'db.connect_timeout', minimum=1
        ),
        sink_type=sink_type,
        sink_enabled=sink_enabled,
        datadog_api_key=str(get('datadog.api_key', '')),
        datadog_app_key=str(get('datadog.app_key', '')),
        datadog_api_url=str(get('datadog.api_url', DEFAULT_DATADOG_API_URL)).rstrip('/'),
        metric_namespace=str(get('datadog.namespace', DEFAULT_METRIC_NAMESPACE)),
        sumo_url=str(get('sumologic.url', '')),
        sumo_category_prefix=str(get('sumologic.category_prefix', DEFAULT_SUMO_CATEGORY_PREFIX)),
        http_timeout=_parse_number(get('http_timeout', DEFAULT_HTTP_TIMEOUT), 'http_timeout', float, 0.1),
        region_workers=_parse_number(get('workers.regions', DEFAULT_REGION_WORKERS), 'workers.regions', minimum=1),
        tag_workers=_parse_number(get('workers.tags', DEFAULT_TAG_WORKERS), 'workers.tags', minimum=1),
        instance_workers=_parse_number(
            get('workers.instances', DEFAULT_INSTANCE_WORKERS), 'workers.instances', minimum=1
        ),
        schema_workers=_parse_number(get('workers.schemas', DEFAULT_SCHEMA_WORKERS), 'workers.schemas', minimum=1),
        ship_workers=_parse_number(get('workers.shipments', DEFAULT_SHIP_WORKERS), 'workers.shipments', minimum=1),
    )

    if audit_config.sink_enabled:
        if sink_type == SINK_DATADOG and not (audit_config.datadog_api_key and audit_config.datadog_app_key):
            raise ConfigurationError(
                "Datadog sink requires datadog.api_key (DD_API_KEY) and datadog.app_key (DD_APP_KEY)"
            )
        if sink_type == SINK_SUMOLOGIC and not audit_config.sumo_url:
            raise ConfigurationError("Sumo Logic sink requires sumologic.url (SUMO_HTTP_URL)")

    return audit_config


def generate_sample_config() -> str:
    """Generate a sample config file content."""
    return '''# Table Growth Audit Configuration
#
# Environment variable substitution supported:
#   ${VAR_NAME}           - required env var
#   ${VAR_NAME:-default}  - env var with default value

# Environment label attached to every metric (required)
environment: production

# Regions searched for RDS instances
regions:
  - eu-west-1
  - eu-central-1
  - sa-east-1
  - us-east-1
  - us-west-1
  - us-west-2

# Logging level: DEBUG, INFO, WARNING, ERROR
log_level: INFO
debug: false

# Instance tags
tags:
  # Only instances tagged <filter_key>=<filter_value> are audited
  filter_key: audit_growth
  filter_value: "true"
  # Colon-separated schema list, e.g. "orders:billing"
  schemas_key: schemas_to_audit
  # "<region>:<SSM parameter path>" holding {"username": ..., "password": ...}
  credential_key: cred_path

discovery:
  # describe_db_instances page size (20-100); later pages are not followed
  page_size: 100

db:
  port: 3306
  catalog: information_schema
  connect_timeout: 5

sink:
  # datadog, sumologic or log
  type: datadog
  # false = log metrics instead of sending them
  enabled: true

datadog:
  api_key: ${DD_API_KEY}
  app_key: ${DD_APP_KEY}
  # api_url: https://api.datadoghq.eu
  namespace: rds.db

# sumologic:
#   url: ${SUMO_HTTP_URL}
#   category_prefix: rds/table_growth/

# Concurrency bounds per level
workers:
  regions: 6
  tags: 8
  instances: 8
  schemas: 4
  shipments: 8
'''
