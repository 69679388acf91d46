"""
Constants for the table growth audit.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# Byte/Size Conversion Constants
# =============================================================================

BYTES_PER_MB = 1024 ** 2

# Size metrics are reported in MB, snapped to this increment
SIZE_INCREMENT_MB = 0.02

# =============================================================================
# Regions
# =============================================================================

DEFAULT_REGIONS = [
    "eu-west-1",
    "eu-central-1",
    "sa-east-1",
    "us-east-1",
    "us-west-1",
    "us-west-2",
]

# =============================================================================
# Instance Tags
# =============================================================================

DEFAULT_FILTER_TAG_KEY = "audit_growth"
DEFAULT_FILTER_TAG_VALUE = "true"
DEFAULT_SCHEMAS_TAG_KEY = "schemas_to_audit"
DEFAULT_CREDENTIAL_TAG_KEY = "cred_path"

# schemas_to_audit = "db1:db2:db3"
SCHEMA_LIST_SEPARATOR = ":"
# cred_path = "<region>:<parameter path>"
CREDENTIAL_PATH_SEPARATOR = ":"

# =============================================================================
# Discovery
# =============================================================================

# describe_db_instances accepts MaxRecords in [20, 100]
DEFAULT_PAGE_SIZE = 100
MIN_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# =============================================================================
# Database
# =============================================================================

DEFAULT_DB_PORT = 3306
DEFAULT_CATALOG = "information_schema"
DB_DRIVER = "mysql+pymysql"

# Connection pool bounds: 5 idle + 5 overflow = 10 open at most
POOL_SIZE = 5
POOL_MAX_OVERFLOW = 5
POOL_RECYCLE_SECONDS = 300
DEFAULT_CONNECT_TIMEOUT = 5

METRIC_ROW_COUNT = "row_count"
METRIC_DATA_SIZE = "data_size"
METRIC_INDEX_SIZE = "index_size"
METRIC_TOTAL_SIZE = "total_size"

TABLE_METRIC_NAMES = (
    METRIC_ROW_COUNT,
    METRIC_DATA_SIZE,
    METRIC_INDEX_SIZE,
    METRIC_TOTAL_SIZE,
)

# =============================================================================
# Sinks
# =============================================================================

SINK_DATADOG = "datadog"
SINK_SUMOLOGIC = "sumologic"
SINK_LOG = "log"
SINK_TYPES = (SINK_DATADOG, SINK_SUMOLOGIC, SINK_LOG)

DEFAULT_METRIC_NAMESPACE = "rds.db"
DEFAULT_DATADOG_API_URL = "https://api.datadoghq.com"
DATADOG_SERIES_PATH = "/api/v1/series"
DEFAULT_SUMO_CATEGORY_PREFIX = "rds/table_growth/"
DEFAULT_HTTP_TIMEOUT = 10

# =============================================================================
# Default Worker Counts
# =============================================================================

DEFAULT_REGION_WORKERS = 6
DEFAULT_TAG_WORKERS = 8
DEFAULT_INSTANCE_WORKERS = 8
DEFAULT_SCHEMA_WORKERS = 4
DEFAULT_SHIP_WORKERS = 8

# =============================================================================
# AWS Client Settings
# =============================================================================

AWS_CONNECT_TIMEOUT = 5
AWS_READ_TIMEOUT = 30
AWS_MAX_ATTEMPTS = 3
DEFAULT_RETRY_ATTEMPTS = 3


def bytes_to_mb(bytes_value: float) -> float:
    """Convert bytes to megabytes."""
    return bytes_value / BYTES_PER_MB
