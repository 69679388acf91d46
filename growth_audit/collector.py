"""
Per-table size metrics from the MySQL metadata catalog.

Sizes are reported in MB snapped to 0.02 MB. ``total_size`` is computed from
the raw byte sum of data and index length, so it can differ from
``data_size + index_size``.
"""
import logging
import math
import re
from typing import List, NamedTuple, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from .constants import (
    DEFAULT_CATALOG,
    DEFAULT_CONNECT_TIMEOUT,
    METRIC_DATA_SIZE,
    METRIC_INDEX_SIZE,
    METRIC_ROW_COUNT,
    METRIC_TOTAL_SIZE,
    POOL_MAX_OVERFLOW,
    POOL_RECYCLE_SECONDS,
    POOL_SIZE,
    SIZE_INCREMENT_MB,
    bytes_to_mb,
)
from .errors import CollectionError
from .models import ConnectionParams, TableMetric

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_$]*$')

TABLE_SIZE_QUERY = (
    "select table_schema, table_name, table_rows, data_length, index_length "
    "from {catalog}.tables where table_schema = :schema order by table_name"
)


def rounded_mb(size_bytes: Optional[float]) -> float:
    """
    Convert bytes to MB, rounded to the nearest 0.02 MB (ties round up).

    Example: 1_572_864 -> 1.5
    """
    if not size_bytes:
        return 0.0
    steps = math.floor(bytes_to_mb(size_bytes) / SIZE_INCREMENT_MB + 0.5)
    # round() strips float noise such as 0.060000000000000005
    return round(steps * SIZE_INCREMENT_MB, 2)


def table_metric_from_row(row: Sequence) -> TableMetric:
    """
    Build a TableMetric from one catalog row.

    Row layout: (table_schema, table_name, table_rows, data_length, index_length).
    NULL counts, as reported for views, are treated as 0.
    """
    schema_name, table_name, table_rows, data_length, index_length = row[:5]
    data_bytes = int(data_length or 0)
    index_bytes = int(index_length or 0)

    return TableMetric(
        schema_name=schema_name,
        table_name=table_name,
        metrics=(
            (METRIC_ROW_COUNT, float(table_rows or 0)),
            (METRIC_DATA_SIZE, rounded_mb(data_bytes)),
            (METRIC_INDEX_SIZE, rounded_mb(index_bytes)),
            (METRIC_TOTAL_SIZE, rounded_mb(data_bytes + index_bytes)),
        ),
    )


def build_engine(params: ConnectionParams, connect_timeout: int = DEFAULT_CONNECT_TIMEOUT) -> Engine:
    """
    Create a pooled engine for one instance.

    At most 10 connections are open (5 kept idle plus 5 overflow) and each
    is recycled after 5 minutes.
    """
    return create_engine(
        params.url(),
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=POOL_MAX_OVERFLOW,
        pool_recycle=POOL_RECYCLE_SECONDS,
        pool_pre_ping=True,
        connect_args={'connect_timeout': connect_timeout},
    )


class CollectedTables(NamedTuple):
    """Metrics read for one schema, plus the error that cut the read short."""
    metrics: List[TableMetric]
    error: Optional[str] = None


class MetricsCollector:
    """
    Reads table size metrics for the schemas of one instance.

    The engine is shared by every schema of the instance; call dispose()
    (or use the collector as a context manager) when the instance is done.
    """

    def __init__(self, engine: Engine, catalog: str = DEFAULT_CATALOG, instance_name: str = ""):
        if not _IDENTIFIER.match(catalog):
            raise CollectionError(f"Invalid catalog name {catalog!r}")
        self.engine = engine
        self.catalog = catalog
        self.instance_name = instance_name or str(engine.url.host or "")
        self._query = text(TABLE_SIZE_QUERY.format(catalog=catalog))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.dispose()
        return False

    def dispose(self) -> None:
        self.engine.dispose()

    def collect_with_status(self, schema: str) -> CollectedTables:
        """
        Query ``schema`` and return its metrics in query order.

        On a connection or query failure the error is logged and the rows
        read before it are returned alongside the error message.
        """
        metrics: List[TableMetric] = []
        logger.info(f"[{self.instance_name}] Gathering metrics for schema: {schema}")

        try:
            with self.engine.connect() as conn:
                result = conn.execute(self._query, {'schema': schema})
                for row in result:
                    metric = table_metric_from_row(tuple(row))
                    metrics.append(metric)
                    values = metric.as_dict()
                    logger.debug(
                        f"schema: {metric.schema_name}, table: {metric.table_name}, "
                        f"rows: {values[METRIC_ROW_COUNT]:.0f}, data_size: {values[METRIC_DATA_SIZE]}, "
                        f"index_size: {values[METRIC_INDEX_SIZE]}, total_size: {values[METRIC_TOTAL_SIZE]}"
                    )
        except SQLAlchemyError as e:
            logger.warning(
                f"[{self.instance_name}] Failed to collect schema {schema} "
                f"after {len(metrics)} tables: {e}"
            )
            return CollectedTables(metrics, str(e))

        if not metrics:
            logger.info(f"[{self.instance_name}] No tables returned for schema {schema}")
        return CollectedTables(metrics)
