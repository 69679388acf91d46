"""
Table growth audit shared library.
"""
# Import constants module for easy access
from . import constants
from .collector import MetricsCollector, build_engine, rounded_mb, table_metric_from_row
from .config import AuditConfig, build_audit_config, generate_sample_config, load_config
from .constants import (
    BYTES_PER_MB,
    DEFAULT_REGIONS,
    SINK_DATADOG,
    SINK_LOG,
    SINK_SUMOLOGIC,
    TABLE_METRIC_NAMES,
    bytes_to_mb,
)
from .credentials import CredentialResolver, parse_credential_path
from .discovery import RegionInstanceDiscoverer
from .errors import (
    AuditError,
    CollectionError,
    ConfigurationError,
    CredentialError,
    DiscoveryError,
    SchemaListError,
    ShippingError,
    TagRetrievalError,
)
from .models import (
    ConnectionParams,
    Credential,
    DiscoveryResult,
    Instance,
    MetricPoint,
    RunSummary,
    TableMetric,
    Tag,
)
from .orchestrator import AuditOrchestrator, build_orchestrator, run_audit
from .sinks import DatadogSink, LogSink, MetricsSink, SumoLogicSink, build_sink
from .tags import filter_on_tag, parse_schema_list, tags_to_list
from .utils import (
    ClientCache,
    fan_out,
    generate_run_id,
    get_timestamp,
    print_run_summary,
    retry_with_backoff,
    setup_logging,
    write_json,
)

__version__ = "1.0.0"

__all__ = [
    # Constants
    'constants',
    'BYTES_PER_MB',
    'DEFAULT_REGIONS',
    'SINK_DATADOG',
    'SINK_LOG',
    'SINK_SUMOLOGIC',
    'TABLE_METRIC_NAMES',
    'bytes_to_mb',
    # Errors
    'AuditError',
    'CollectionError',
    'ConfigurationError',
    'CredentialError',
    'DiscoveryError',
    'SchemaListError',
    'ShippingError',
    'TagRetrievalError',
    # Models
    'ConnectionParams',
    'Credential',
    'DiscoveryResult',
    'Instance',
    'MetricPoint',
    'RunSummary',
    'TableMetric',
    'Tag',
    # Config
    'AuditConfig',
    'build_audit_config',
    'generate_sample_config',
    'load_config',
    # Pipeline
    'AuditOrchestrator',
    'CredentialResolver',
    'MetricsCollector',
    'RegionInstanceDiscoverer',
    'build_engine',
    'build_orchestrator',
    'filter_on_tag',
    'parse_credential_path',
    'parse_schema_list',
    'rounded_mb',
    'run_audit',
    'table_metric_from_row',
    'tags_to_list',
    # Sinks
    'DatadogSink',
    'LogSink',
    'MetricsSink',
    'SumoLogicSink',
    'build_sink',
    # Utils
    'ClientCache',
    'fan_out',
    'generate_run_id',
    'get_timestamp',
    'print_run_summary',
    'retry_with_backoff',
    'setup_logging',
    'write_json',
]
