"""
Data models for the table growth audit.
"""
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.engine import URL

from .constants import DB_DRIVER, DEFAULT_CATALOG, DEFAULT_DB_PORT


@dataclass(frozen=True)
class Tag:
    """A name/value label attached to an instance."""
    name: str
    value: str


@dataclass
class Instance:
    """
    One addressable database deployment found by discovery.

    Tags keep their listing order. Lookups go through a name -> value map
    built once at construction; when a name repeats, the first one wins.
    """
    identifier: str  # DBInstanceArn
    name: str  # DBInstanceIdentifier
    endpoint: str = ""
    port: Optional[int] = None
    region: str = ""
    tags: List[Tag] = field(default_factory=list)

    _tag_map: Dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self._tag_map = {}
        for tag in self.tags:
            self._tag_map.setdefault(tag.name, tag.value)

    def tag_value(self, name: str) -> Optional[str]:
        """Return the value of the first tag called ``name``, or None."""
        return self._tag_map.get(name)

    def has_tag(self, name: str, value: str) -> bool:
        return name in self._tag_map and self._tag_map[name] == value


@dataclass(frozen=True)
class Credential:
    """Database login resolved from the secret store. Never logged."""
    user: str
    password: str = field(repr=False)

    def is_valid(self) -> bool:
        return bool(self.user) and bool(self.password)


@dataclass(frozen=True)
class ConnectionParams:
    """Everything needed to open a connection to one instance."""
    user: str
    password: str = field(repr=False)
    host: str = ""
    port: int = DEFAULT_DB_PORT
    catalog: str = DEFAULT_CATALOG

    @classmethod
    def from_instance(
        cls,
        credential: Credential,
        instance: Instance,
        catalog: str = DEFAULT_CATALOG,
        default_port: int = DEFAULT_DB_PORT
    ) -> "ConnectionParams":
        return cls(
            user=credential.user,
            password=credential.password,
            host=instance.endpoint,
            port=instance.port or default_port,
            catalog=catalog,
        )

    def url(self) -> URL:
        """SQLAlchemy URL; quoting of the password is handled by URL.create."""
        return URL.create(
            DB_DRIVER,
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.catalog,
        )


@dataclass(frozen=True)
class TableMetric:
    """Size metrics for one table, in collection order."""
    schema_name: str
    table_name: str
    metrics: Tuple[Tuple[str, float], ...] = ()

    def as_dict(self) -> Dict[str, float]:
        return dict(self.metrics)

    def value(self, name: str) -> Optional[float]:
        return self.as_dict().get(name)


@dataclass(frozen=True)
class MetricPoint:
    """Sink-facing projection of one TableMetric component."""
    metric: str
    value: float
    timestamp: float
    host: str = ""
    tags: Tuple[str, ...] = ()


@dataclass
class DiscoveryResult:
    """Instances found across regions plus what went wrong on the way."""
    instances: List[Instance] = field(default_factory=list)
    failed_regions: Dict[str, str] = field(default_factory=dict)
    tag_failures: List[str] = field(default_factory=list)


@dataclass
class SchemaOutcome:
    """Result of auditing one schema on one instance."""
    schema: str
    tables: int = 0
    shipped: int = 0
    failed_shipments: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class InstanceOutcome:
    """Result of auditing one instance."""
    identifier: str
    name: str
    schemas: List[SchemaOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(s.ok for s in self.schemas)


@dataclass
class RunSummary:
    """Aggregated outcome of one audit run."""
    run_id: str
    started_at: str
    finished_at: Optional[str] = None
    regions: List[str] = field(default_factory=list)
    failed_regions: Dict[str, str] = field(default_factory=dict)
    tag_failures: List[str] = field(default_factory=list)
    instances_discovered: int = 0
    instances_eligible: int = 0
    instances_succeeded: int = 0
    instances_failed: Dict[str, str] = field(default_factory=dict)
    schemas_succeeded: int = 0
    schemas_failed: Dict[str, str] = field(default_factory=dict)
    tables_collected: int = 0
    metrics_shipped: int = 0
    metrics_failed: int = 0

    def record_instance(self, outcome: InstanceOutcome) -> None:
        """Fold one instance branch into the totals."""
        for schema in outcome.schemas:
            self.tables_collected += schema.tables
            self.metrics_shipped += schema.shipped
            self.metrics_failed += schema.failed_shipments
            if schema.ok:
                self.schemas_succeeded += 1
            else:
                self.schemas_failed[f"{outcome.name}/{schema.schema}"] = schema.error or ""

        if outcome.error is not None:
            self.instances_failed[outcome.identifier] = outcome.error
        elif outcome.ok:
            self.instances_succeeded += 1
        else:
            self.instances_failed[outcome.identifier] = "one or more schemas failed"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)
