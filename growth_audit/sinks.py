"""
Metric sinks.

Two interchangeable protocols are supported:

- DatadogSink: one timestamped gauge point per metric name
  ("<namespace>.table_metrics.<metric>") posted to the series API.
- SumoLogicSink: one flat JSON record per (schema, table) posted to an HTTP
  source, identified by the X-Sumo-Name/Host/Category headers.

Shipping is fire-and-forget: a failed post is logged, counted and dropped.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter

from .config import AuditConfig
from .constants import (
    DATADOG_SERIES_PATH,
    DEFAULT_DATADOG_API_URL,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_METRIC_NAMESPACE,
    DEFAULT_SUMO_CATEGORY_PREFIX,
    SINK_DATADOG,
    SINK_SUMOLOGIC,
)
from .errors import ShippingError
from .models import Instance, MetricPoint, TableMetric

logger = logging.getLogger(__name__)


class MetricsSink(ABC):
    """
    Base class for metric destinations.

    Subclasses implement _send(); ship() wraps it with the drop-and-count
    policy and is safe to call from many threads.
    """

    name = "sink"

    def __init__(self, environment: str, timeout: float = DEFAULT_HTTP_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.environment = environment
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sent = 0
        self.failed = 0
        self._lock = threading.Lock()

    @abstractmethod
    def _send(self, instance: Instance, metric: TableMetric, timestamp: float) -> None:
        """Transmit one table's metrics; raise ShippingError on failure."""

    def ship(self, instance: Instance, metric: TableMetric, timestamp: float) -> bool:
        """Send one table's metrics. Returns False when they were dropped."""
        try:
            self._send(instance, metric, timestamp)
        except Exception as e:
            logger.warning(
                f"Dropped metrics for {instance.name}/{metric.schema_name}.{metric.table_name}: {e}"
            )
            with self._lock:
                self.failed += 1
            return False

        with self._lock:
            self.sent += 1
        return True

    def _post(self, url: str, body: str, headers: Dict[str, str]) -> None:
        try:
            response = self.session.post(url, data=body, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ShippingError(f"{self.name} post failed: {e}", e) from e

    def close(self) -> None:
        self.session.close()


class DatadogSink(MetricsSink):
    """Point-series sink for the Datadog v1 series API."""

    name = SINK_DATADOG

    def __init__(self, api_key: str, app_key: str, environment: str,
                 api_url: str = DEFAULT_DATADOG_API_URL,
                 namespace: str = DEFAULT_METRIC_NAMESPACE,
                 timeout: float = DEFAULT_HTTP_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(environment, timeout, session)
        self.api_key = api_key
        self.app_key = app_key
        self.url = f"{api_url.rstrip('/')}{DATADOG_SERIES_PATH}"
        self.namespace = namespace

    def metric_tags(self, instance: Instance, metric: TableMetric) -> List[str]:
        return [
            f"schema_name:{metric.schema_name}",
            f"table_name:{metric.table_name}",
            f"environment:{self.environment}",
            f"db_hostname:{instance.endpoint}",
        ]

    def build_points(self, instance: Instance, metric: TableMetric, timestamp: float) -> List[MetricPoint]:
        tags = tuple(self.metric_tags(instance, metric))
        return [
            MetricPoint(
                metric=f"{self.namespace}.table_metrics.{name}",
                value=value,
                timestamp=timestamp,
                host=instance.endpoint,
                tags=tags,
            )
            for name, value in metric.metrics
        ]

    def build_payload(self, points: List[MetricPoint]) -> Dict[str, Any]:
        return {
            'series': [
                {
                    'metric': p.metric,
                    'points': [[int(p.timestamp), p.value]],
                    'type': 'gauge',
                    'host': p.host,
                    'tags': list(p.tags),
                }
                for p in points
            ]
        }

    def _send(self, instance: Instance, metric: TableMetric, timestamp: float) -> None:
        payload = self.build_payload(self.build_points(instance, metric, timestamp))
        self._post(self.url, json.dumps(payload), {
            'Content-Type': 'application/json',
            'DD-API-KEY': self.api_key,
            'DD-APPLICATION-KEY': self.app_key,
        })


class SumoLogicSink(MetricsSink):
    """Flattened-record sink for a Sumo Logic HTTP source."""

    name = SINK_SUMOLOGIC

    def __init__(self, url: str, environment: str,
                 category_prefix: str = DEFAULT_SUMO_CATEGORY_PREFIX,
                 timeout: float = DEFAULT_HTTP_TIMEOUT,
                 session: Optional[requests.Session] = None):
        super().__init__(environment, timeout, session)
        self.url = url
        self.category_prefix = category_prefix

    def build_record(self, metric: TableMetric, timestamp: float) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            'timestamp': int(timestamp),
            'environment': self.environment,
            'schema_name': metric.schema_name,
            'table_name': metric.table_name,
        }
        record.update(metric.as_dict())
        return record

    def build_headers(self, instance: Instance, metric: TableMetric) -> Dict[str, str]:
        return {
            'Content-Type': 'application/json',
            'X-Sumo-Name': f"{instance.name}/{metric.schema_name}",
            'X-Sumo-Host': instance.endpoint,
            'X-Sumo-Category': f"{self.category_prefix}{instance.name}",
        }

    def _send(self, instance: Instance, metric: TableMetric, timestamp: float) -> None:
        self._post(
            self.url,
            json.dumps(self.build_record(metric, timestamp)),
            self.build_headers(instance, metric),
        )


class LogSink(MetricsSink):
    """Dry-run sink: logs what would have been sent."""

    name = "log"

    def _send(self, instance: Instance, metric: TableMetric, timestamp: float) -> None:
        logger.info(
            f"[dry-run] {instance.name}/{metric.schema_name}.{metric.table_name} "
            f"{json.dumps(metric.as_dict())}"
        )


def shipping_session(config: AuditConfig, session: Optional[requests.Session] = None) -> requests.Session:
    """
    Return ``session`` (or a new one) with a connection pool sized for every
    shipment that can be in flight at once.
    """
    session = session or requests.Session()
    pool_size = config.instance_workers * config.schema_workers * config.ship_workers
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=pool_size)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    return session


def build_sink(config: AuditConfig, session: Optional[requests.Session] = None) -> MetricsSink:
    """Create the sink selected by the configuration."""
    if not config.sink_enabled:
        logger.info("Sink disabled, metrics will only be logged")
        return LogSink(config.environment, config.http_timeout, session)

    session = shipping_session(config, session)

    if config.sink_type == SINK_DATADOG:
        return DatadogSink(
            api_key=config.datadog_api_key,
            app_key=config.datadog_app_key,
            environment=config.environment,
            api_url=config.datadog_api_url,
            namespace=config.metric_namespace,
            timeout=config.http_timeout,
            session=session,
        )
    if config.sink_type == SINK_SUMOLOGIC:
        return SumoLogicSink(
            url=config.sumo_url,
            environment=config.environment,
            category_prefix=config.sumo_category_prefix,
            timeout=config.http_timeout,
            session=session,
        )
    return LogSink(config.environment, config.http_timeout, session)
