"""
Utility functions for the table growth audit.

Logging Level Standards:
------------------------
- ERROR: Branch failures that stop a whole region or instance
         "[eu-west-1] Failed to list DB instances: {e}"
- WARNING: Partial failures (tag fetch, one schema, one shipment)
           "Failed to retrieve tags for {arn}: {e}"
- INFO: Progress messages, counts
        "Found 12 DB instances in 3 regions"
- DEBUG: Per-item detail that doesn't affect the run
         "schema: app, table: users, rows: 100 ..."
"""
import hashlib
import json
import logging
import os
import re
import sys
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Tuple,
    TypeVar,
)

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import AWS_CONNECT_TIMEOUT, AWS_MAX_ATTEMPTS, AWS_READ_TIMEOUT

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])
T = TypeVar('T')
R = TypeVar('R')


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Retry a transient-failure-prone call with exponential backoff (tenacity).

    The last exception is re-raised once ``max_attempts`` calls have failed.
    Exceptions outside ``exceptions`` are raised immediately.

    Example:
        @retry_with_backoff(exceptions=(EndpointConnectionError, ConnectTimeoutError))
        def describe(rds):
            return rds.describe_db_instances(MaxRecords=100)
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)  # type: ignore[return-value]
    return decorator


# =============================================================================
# Bounded fan-out
# =============================================================================

class BranchResult(NamedTuple):
    """Outcome of one concurrent branch: either ``result`` or ``error`` is set."""
    item: Any
    result: Any
    error: Optional[BaseException]


def fan_out(
    fn: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 1,
    label: Callable[[T], str] = str,
    log: Optional[logging.Logger] = None
) -> List[BranchResult]:
    """
    Run ``fn`` over ``items`` on a bounded thread pool and wait for all of them.

    Exceptions never escape: each failed branch comes back as a BranchResult
    with ``error`` set so the caller can record it and keep the rest.
    Results are returned in completion order.

    Args:
        fn: Callable applied to each item
        items: Work items
        max_workers: Number of threads (1 = serial)
        label: Renders an item for log messages
        log: Optional logger for debug messages

    Returns:
        One BranchResult per item
    """
    work = list(items)
    _logger = log or logger
    results: List[BranchResult] = []

    if not work:
        return results

    if max_workers <= 1 or len(work) == 1:
        for item in work:
            try:
                results.append(BranchResult(item, fn(item), None))
            except Exception as e:
                _logger.debug(f"Branch {label(item)} failed: {e}")
                results.append(BranchResult(item, None, e))
        return results

    workers = min(max_workers, len(work))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(fn, item): item for item in work}
        for future in as_completed(futures):
            item = futures[future]
            try:
                results.append(BranchResult(item, future.result(), None))
            except Exception as e:
                _logger.debug(f"Branch {label(item)} failed: {e}")
                results.append(BranchResult(item, None, e))

    return results


# =============================================================================
# AWS clients
# =============================================================================

class ClientCache:
    """
    Thread-safe cache of boto3 clients keyed by (service, region).

    boto3 clients are safe to share between threads but creating them from
    one Session is not, so creation happens under a lock.
    """

    def __init__(self, session: Optional[boto3.Session] = None, config: Optional[Config] = None):
        self._session = session or boto3.Session()
        self._config = config or Config(
            connect_timeout=AWS_CONNECT_TIMEOUT,
            read_timeout=AWS_READ_TIMEOUT,
            retries={'max_attempts': AWS_MAX_ATTEMPTS, 'mode': 'standard'},
        )
        self._clients: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def client(self, service: str, region: str) -> Any:
        key = (service, region)
        with self._lock:
            if key not in self._clients:
                self._clients[key] = self._session.client(
                    service, region_name=region, config=self._config
                )
            return self._clients[key]


# =============================================================================
# Run identification
# =============================================================================

def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def get_timestamp() -> str:
    """Get current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


# =============================================================================
# Redaction
# =============================================================================

def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Example: 123456789012 -> acc-a3f8b2c1
    """
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


def mask_account_id(arn: str) -> str:
    """
    Mask the account ID in an AWS ARN for safe logging.

    Example: arn:aws:rds:us-east-1:123456789012:db:orders
          -> arn:aws:rds:us-east-1:***:db:orders
    """
    return re.sub(r'(\d{12})', '***', arn)


_LOG_REDACT_PATTERNS = [
    # ARNs first so the account id inside them is handled as part of the ARN
    (re.compile(r'(arn:aws[-a-z]*):([a-z0-9-]+):([a-z0-9-]*):(\d{12}):([^\s,\]}"\']+)'),
     lambda m: f"{m.group(1)}:{m.group(2)}:{m.group(3) or '*'}:{hash_sensitive_id(m.group(4))}:{hash_sensitive_id(m.group(5))}"),
    (re.compile(r'\b(\d{12})\b(?!\d)'), lambda m: f"acc-{hash_sensitive_id(m.group(1))}"),
    # mydb.abc123.us-east-1.rds.amazonaws.com -> redacted-xxxx.us-east-1.rds.amazonaws.com
    (re.compile(r'([a-z0-9-]+)(\.[a-z0-9-]*)?\.([a-z0-9-]+\.rds\.amazonaws\.com)'),
     lambda m: f"redacted-{hash_sensitive_id(m.group(1))}.{m.group(3)}"),
]


def redact_log_message(message: str) -> str:
    """Redact ARNs, account IDs and RDS endpoints from a log message."""
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation across a run.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Third-party loggers capped at INFO even when the run is at DEBUG
NOISY_LOGGERS = ('botocore', 'boto3', 'urllib3', 'sqlalchemy.engine', 'sqlalchemy.pool')


def _handler(handler: logging.Handler, level: int, redact: bool = False) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    if redact:
        handler.addFilter(RedactingFilter())
    return handler


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger for a run.

    Console output goes to stderr. With ``output_dir`` a redacted copy is
    also written to growth_audit_<timestamp>.log in that directory.
    Calling it again replaces the previous handlers.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(_handler(logging.StreamHandler(sys.stderr), numeric_level))

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        run_stamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"growth_audit_{run_stamp}.log")
        root_logger.addHandler(
            _handler(logging.FileHandler(log_file, mode='w'), numeric_level, redact=True)
        )
        root_logger.info(f"Writing log file {log_file}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.INFO))

    return logging.getLogger('growth_audit')


# =============================================================================
# Output
# =============================================================================

def write_json(data: Any, filepath: str) -> None:
    """Write data to a local JSON file or an s3:// path."""
    if filepath.startswith("s3://"):
        write_to_s3(data, filepath)
        return

    # Local file, owner read/write only
    fd = os.open(filepath, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'w') as f:
        json.dump(data, f, indent=2, default=str)
    logger.info(f"Wrote {filepath}")


def split_s3_path(s3_path: str, default_key: str = "summary.json") -> Tuple[str, str]:
    """
    Split ``s3://bucket/key`` into (bucket, key).

    Example: s3://audits/growth/run.json -> ("audits", "growth/run.json")
    """
    bucket, _, key = s3_path[len("s3://"):].partition("/")
    return bucket, key or default_key


def write_to_s3(data: Any, s3_path: str, session: Optional[boto3.Session] = None) -> None:
    """Upload ``data`` as a JSON object to an s3:// path."""
    bucket, key = split_s3_path(s3_path)
    body = json.dumps(data, indent=2, default=str)

    s3 = (session or boto3.Session()).client('s3')
    try:
        s3.put_object(Bucket=bucket, Key=key, Body=body.encode('utf-8'), ContentType="application/json")
    except (ClientError, BotoCoreError) as e:
        logger.error(f"Could not upload run summary to s3://{bucket}/{key}: {e}")
        raise
    logger.info(f"Uploaded run summary to s3://{bucket}/{key}")


def print_run_summary(summary: Dict[str, Any], console: Optional[Console] = None) -> None:
    """Print a run summary dict (RunSummary.to_dict()) as a rich table."""
    console = console or Console(stderr=True)

    table = Table(title=f"Table Growth Audit {summary.get('run_id', '')}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    regions = summary.get('regions', [])
    failed_regions = summary.get('failed_regions', {})
    table.add_row("Regions", f"{len(regions) - len(failed_regions)}/{len(regions)} ok")
    table.add_row("Instances discovered", str(summary.get('instances_discovered', 0)))
    table.add_row("Instances eligible", str(summary.get('instances_eligible', 0)))
    table.add_row("Instances succeeded", str(summary.get('instances_succeeded', 0)))
    table.add_row("Instances failed", str(len(summary.get('instances_failed', {}))))
    table.add_row("Schemas succeeded", str(summary.get('schemas_succeeded', 0)))
    table.add_row("Schemas failed", str(len(summary.get('schemas_failed', {}))))
    table.add_row("Tables collected", f"{summary.get('tables_collected', 0):,}")
    table.add_row("Metrics shipped", f"{summary.get('metrics_shipped', 0):,}")
    table.add_row("Metrics dropped", f"{summary.get('metrics_failed', 0):,}")

    console.print(Panel(table))

    for region, reason in failed_regions.items():
        console.print(f"[red]Region {region} failed:[/red] {reason}")
    for identifier, reason in summary.get('instances_failed', {}).items():
        console.print(f"[red]Instance {mask_account_id(identifier)} failed:[/red] {reason}")
