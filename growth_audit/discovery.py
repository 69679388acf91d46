"""
RDS instance discovery across regions.

Regions are listed concurrently and, inside each region, instance tags are
fetched concurrently. Only the first page of describe_db_instances is read
(page size is configurable); a truncated listing is logged.
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .constants import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_REGION_WORKERS,
    DEFAULT_REGIONS,
    DEFAULT_TAG_WORKERS,
)
from .errors import DiscoveryError, TagRetrievalError
from .models import DiscoveryResult, Instance, Tag
from .tags import filter_on_tag, tags_to_list
from .utils import ClientCache, fan_out, mask_account_id, retry_with_backoff

logger = logging.getLogger(__name__)

TRANSIENT_AWS_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


class RegionInstanceDiscoverer:
    """Enumerates RDS instances and their tags in a fixed set of regions."""

    def __init__(
        self,
        clients: ClientCache,
        regions: Sequence[str] = tuple(DEFAULT_REGIONS),
        page_size: int = DEFAULT_PAGE_SIZE,
        region_workers: int = DEFAULT_REGION_WORKERS,
        tag_workers: int = DEFAULT_TAG_WORKERS,
        debug: bool = False
    ):
        self.clients = clients
        self.regions = list(regions)
        self.page_size = page_size
        self.region_workers = region_workers
        self.tag_workers = tag_workers
        self.debug = debug

    def discover(self, tag_filter: Optional[Tuple[str, str]] = None) -> DiscoveryResult:
        """
        List instances in every region.

        A region whose listing fails is recorded in ``failed_regions`` and
        the others carry on. When ``tag_filter`` is given only instances with
        that exact (key, value) tag are returned.
        """
        logger.info(f"Listing RDS instances in {len(self.regions)} regions")
        result = DiscoveryResult()
        lock = threading.Lock()

        def list_region(region: str) -> int:
            instances, tag_failures = self._list_region(region)
            with lock:
                result.instances.extend(instances)
                result.tag_failures.extend(tag_failures)
            return len(instances)

        for branch in fan_out(list_region, self.regions, self.region_workers, log=logger):
            if branch.error is not None:
                logger.error(f"[{branch.item}] Failed to list DB instances: {branch.error}")
                result.failed_regions[branch.item] = str(branch.error)
            else:
                logger.info(f"[{branch.item}] Found {branch.result} DB instances")

        logger.info(
            f"Found {len(result.instances)} DB instances in "
            f"{len(self.regions) - len(result.failed_regions)}/{len(self.regions)} regions"
        )

        if tag_filter is not None:
            key, value = tag_filter
            result.instances = filter_on_tag(result.instances, key, value)
            logger.info(f"{len(result.instances)} instances tagged {key}={value}")

        return result

    @retry_with_backoff(max_attempts=3, exceptions=TRANSIENT_AWS_ERRORS)
    def _describe_instances(self, rds: Any) -> Dict[str, Any]:
        return rds.describe_db_instances(MaxRecords=self.page_size)

    def _list_region(self, region: str) -> Tuple[List[Instance], List[str]]:
        """Return the instances of one region and the ARNs whose tags failed."""
        logger.debug(f"Fetching RDS instances in: {region}")
        try:
            rds = self.clients.client('rds', region)
            response = self._describe_instances(rds)
        except (ClientError, BotoCoreError) as e:
            raise DiscoveryError(f"Could not list DB instances in {region}: {e}", region, e) from e

        marker = response.get('Marker')
        if marker:
            logger.warning(
                f"[{region}] More than {self.page_size} DB instances, later pages are not audited"
            )
        if self.debug:
            logger.debug(f"Request to {region} contains next token: {marker}")

        db_instances = response.get('DBInstances', [])
        instances: List[Instance] = []
        tag_failures: List[str] = []

        branches = fan_out(
            lambda db: self._build_instance(rds, region, db),
            db_instances,
            self.tag_workers,
            label=lambda db: db.get('DBInstanceIdentifier', ''),
            log=logger,
        )
        for branch in branches:
            if branch.error is not None:
                # Malformed listing entry, nothing to audit
                logger.warning(f"[{region}] Skipping DB instance: {branch.error}")
                continue
            instance, tags_ok = branch.result
            instances.append(instance)
            if not tags_ok:
                tag_failures.append(instance.identifier)

        return instances, tag_failures

    def _build_instance(self, rds: Any, region: str, db: Dict[str, Any]) -> Tuple[Instance, bool]:
        arn = db['DBInstanceArn']
        endpoint = db.get('Endpoint') or {}

        tags_ok = True
        try:
            tags = self._fetch_tags(rds, arn)
        except TagRetrievalError as e:
            logger.warning(f"{e}, continuing with no tags")
            tags = []
            tags_ok = False

        instance = Instance(
            identifier=arn,
            name=db.get('DBInstanceIdentifier', ''),
            endpoint=endpoint.get('Address', ''),
            port=endpoint.get('Port'),
            region=region,
            tags=tags,
        )
        return instance, tags_ok

    def _fetch_tags(self, rds: Any, arn: str) -> List[Tag]:
        try:
            response = rds.list_tags_for_resource(ResourceName=arn)
        except (ClientError, BotoCoreError) as e:
            raise TagRetrievalError(f"Failed to retrieve tags for {mask_account_id(arn)}: {e}", e) from e
        return tags_to_list(response.get('TagList', []))
