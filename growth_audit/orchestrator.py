"""
Audit orchestration.

discover -> filter -> per instance: credentials + schema list
                   -> per schema: collect
                   -> per table: ship

Each level runs on its own bounded pool and waits for all of its branches
before reporting back, so an instance is only done once every schema and
every shipment under it has finished. Failures are recorded per branch in
the RunSummary; one bad region, instance or schema never stops the rest.
"""
import logging
import time
from typing import Callable, Optional

import boto3
import requests
from sqlalchemy.exc import SQLAlchemyError

from .collector import MetricsCollector, build_engine
from .config import AuditConfig
from .credentials import CredentialResolver
from .discovery import RegionInstanceDiscoverer
from .errors import AuditError, CredentialError, SchemaListError
from .models import ConnectionParams, Instance, InstanceOutcome, RunSummary, SchemaOutcome, TableMetric
from .sinks import MetricsSink, build_sink
from .tags import filter_on_tag, parse_schema_list
from .utils import ClientCache, fan_out, generate_run_id, get_timestamp

logger = logging.getLogger(__name__)

CollectorFactory = Callable[[ConnectionParams, Instance], MetricsCollector]


class AuditOrchestrator:
    """Runs one audit pass over the fleet."""

    def __init__(
        self,
        config: AuditConfig,
        discoverer: RegionInstanceDiscoverer,
        resolver: CredentialResolver,
        sink: MetricsSink,
        collector_factory: Optional[CollectorFactory] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config
        self.discoverer = discoverer
        self.resolver = resolver
        self.sink = sink
        self.collector_factory = collector_factory or self._default_collector
        self.clock = clock

    def _default_collector(self, params: ConnectionParams, instance: Instance) -> MetricsCollector:
        engine = build_engine(params, self.config.db_connect_timeout)
        return MetricsCollector(engine, params.catalog, instance.name)

    def run(self) -> RunSummary:
        """Audit every eligible instance and return the run summary."""
        summary = RunSummary(
            run_id=generate_run_id(),
            started_at=get_timestamp(),
            regions=list(self.config.regions),
        )
        logger.info(f"Starting table growth audit {summary.run_id} ({self.config.environment})")

        discovery = self.discoverer.discover()
        summary.failed_regions = dict(discovery.failed_regions)
        summary.tag_failures = list(discovery.tag_failures)
        summary.instances_discovered = len(discovery.instances)

        eligible = filter_on_tag(
            discovery.instances, self.config.filter_tag_key, self.config.filter_tag_value
        )
        summary.instances_eligible = len(eligible)
        logger.info(
            f"{len(eligible)} of {len(discovery.instances)} instances tagged "
            f"{self.config.filter_tag_key}={self.config.filter_tag_value}"
        )

        # One timestamp for every point in the run
        timestamp = self.clock()

        branches = fan_out(
            lambda instance: self.audit_instance(instance, timestamp),
            eligible,
            self.config.instance_workers,
            label=lambda instance: instance.name,
            log=logger,
        )
        for branch in branches:
            instance = branch.item
            if branch.error is not None:
                logger.error(f"[{instance.name}] Audit failed unexpectedly: {branch.error}")
                outcome = InstanceOutcome(instance.identifier, instance.name, error=str(branch.error))
            else:
                outcome = branch.result
            summary.record_instance(outcome)

        summary.finished_at = get_timestamp()
        logger.info(
            f"Audit {summary.run_id} complete: {summary.instances_succeeded}/{summary.instances_eligible} "
            f"instances, {summary.schemas_succeeded} schemas ok, {len(summary.schemas_failed)} failed, "
            f"{summary.tables_collected} tables, {summary.metrics_shipped} shipped, "
            f"{summary.metrics_failed} dropped"
        )
        return summary

    def audit_instance(self, instance: Instance, timestamp: float) -> InstanceOutcome:
        """Resolve credentials and schemas for one instance, then audit each schema."""
        outcome = InstanceOutcome(instance.identifier, instance.name)

        try:
            schemas = parse_schema_list(instance, self.config.schemas_tag_key)
            credential = self.resolver.resolve(instance)
        except (CredentialError, SchemaListError) as e:
            logger.error(f"[{instance.name}] Skipping instance: {e}")
            outcome.error = str(e)
            return outcome

        params = ConnectionParams.from_instance(
            credential, instance, catalog=self.config.db_catalog, default_port=self.config.db_port
        )

        try:
            collector = self.collector_factory(params, instance)
        except (AuditError, SQLAlchemyError) as e:
            logger.error(f"[{instance.name}] Could not prepare connection: {e}")
            outcome.error = f"connection setup failed: {e}"
            return outcome

        with collector:
            branches = fan_out(
                lambda schema: self.audit_schema(instance, collector, schema, timestamp),
                schemas,
                self.config.schema_workers,
                log=logger,
            )
        for branch in branches:
            if branch.error is not None:
                outcome.schemas.append(SchemaOutcome(branch.item, error=str(branch.error)))
            else:
                outcome.schemas.append(branch.result)

        logger.info(
            f"[{instance.name}] Audited {sum(1 for s in outcome.schemas if s.ok)}/{len(schemas)} schemas"
        )
        return outcome

    def audit_schema(
        self,
        instance: Instance,
        collector: MetricsCollector,
        schema: str,
        timestamp: float
    ) -> SchemaOutcome:
        """Collect one schema and ship every table metric it produced."""
        collected = collector.collect_with_status(schema)

        def ship(metric: TableMetric) -> bool:
            return self.sink.ship(instance, metric, timestamp)

        branches = fan_out(
            ship,
            collected.metrics,
            self.config.ship_workers,
            label=lambda metric: f"{metric.schema_name}.{metric.table_name}",
            log=logger,
        )
        shipped = sum(1 for b in branches if b.error is None and b.result)

        return SchemaOutcome(
            schema=schema,
            tables=len(collected.metrics),
            shipped=shipped,
            failed_shipments=len(branches) - shipped,
            error=collected.error,
        )


def build_orchestrator(
    config: AuditConfig,
    session: Optional[boto3.Session] = None,
    http_session: Optional[requests.Session] = None
) -> AuditOrchestrator:
    """Wire the production collaborators for ``config``."""
    clients = ClientCache(session)
    discoverer = RegionInstanceDiscoverer(
        clients,
        regions=config.regions,
        page_size=config.page_size,
        region_workers=config.region_workers,
        tag_workers=config.tag_workers,
        debug=config.debug,
    )
    resolver = CredentialResolver(clients, config.credential_tag_key)
    sink = build_sink(config, http_session)
    return AuditOrchestrator(config, discoverer, resolver, sink)


def run_audit(config: AuditConfig, session: Optional[boto3.Session] = None) -> RunSummary:
    """Build the pipeline for ``config``, run it once and release the sink."""
    orchestrator = build_orchestrator(config, session)
    try:
        return orchestrator.run()
    finally:
        orchestrator.sink.close()
