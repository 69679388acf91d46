"""
Tests for growth_audit/discovery.py using moto.

Covers:
- Listing instances across several regions with their tags
- Tag fetch failures (instance kept with no tags)
- Region failures (recorded, other regions continue)
- Tag filtering
- Single-page listing and the truncation warning
"""
import logging
import os
import sys
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from growth_audit.discovery import RegionInstanceDiscoverer
from growth_audit.models import Tag
from growth_audit.utils import ClientCache


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def aws_credentials():
    """Mocked AWS Credentials for moto."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_SECURITY_TOKEN"] = "testing"
    os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"


@pytest.fixture
def mock_session(aws_credentials):
    """Create a mocked boto3 session."""
    return boto3.Session(region_name="us-east-1")


def create_instance(session, region, name, tags=None):
    rds = session.client("rds", region_name=region)
    rds.create_db_instance(
        DBInstanceIdentifier=name,
        DBInstanceClass="db.t3.micro",
        Engine="mysql",
        MasterUsername="admin",
        MasterUserPassword="password123",
        AllocatedStorage=20,
        Tags=[{"Key": k, "Value": v} for k, v in (tags or {}).items()],
    )


def seed_fleet(session):
    """Three instances in us-east-1, two in eu-west-1."""
    create_instance(session, "us-east-1", "orders", {"audit_growth": "true", "schemas_to_audit": "orders"})
    create_instance(session, "us-east-1", "billing", {"audit_growth": "true"})
    create_instance(session, "us-east-1", "scratch", {"audit_growth": "false"})
    create_instance(session, "eu-west-1", "orders-eu", {"audit_growth": "true"})
    create_instance(session, "eu-west-1", "legacy")


class TagFailingClient:
    """RDS client proxy whose list_tags_for_resource fails for chosen instances."""

    def __init__(self, client, failing_names):
        self._client = client
        self._failing_names = failing_names

    def __getattr__(self, name):
        return getattr(self._client, name)

    def list_tags_for_resource(self, ResourceName):
        if ResourceName.rsplit(":", 1)[-1] in self._failing_names:
            raise ClientError(
                {"Error": {"Code": "AccessDenied", "Message": "not allowed"}},
                "ListTagsForResource",
            )
        return self._client.list_tags_for_resource(ResourceName=ResourceName)


class FaultyClientCache(ClientCache):
    """ClientCache that injects tag and region failures."""

    def __init__(self, session, failing_tags=(), failing_regions=()):
        super().__init__(session)
        self.failing_tags = set(failing_tags)
        self.failing_regions = set(failing_regions)

    def client(self, service, region):
        if region in self.failing_regions:
            broken = MagicMock()
            broken.describe_db_instances.side_effect = ClientError(
                {"Error": {"Code": "UnauthorizedOperation", "Message": "region disabled"}},
                "DescribeDBInstances",
            )
            return broken
        client = super().client(service, region)
        if self.failing_tags:
            return TagFailingClient(client, self.failing_tags)
        return client


# =============================================================================
# Discovery Tests
# =============================================================================

class TestRegionInstanceDiscoverer:
    """Tests for listing instances across regions."""

    @mock_aws
    def test_all_regions_listed(self, mock_session):
        seed_fleet(mock_session)
        discoverer = RegionInstanceDiscoverer(
            ClientCache(mock_session), regions=["us-east-1", "eu-west-1"]
        )

        result = discoverer.discover()

        assert len(result.instances) == 5
        assert sorted(i.name for i in result.instances) == [
            "billing", "legacy", "orders", "orders-eu", "scratch",
        ]
        assert result.failed_regions == {}
        assert result.tag_failures == []

    @mock_aws
    def test_instance_fields(self, mock_session):
        seed_fleet(mock_session)
        discoverer = RegionInstanceDiscoverer(ClientCache(mock_session), regions=["us-east-1"])

        instances = {i.name: i for i in discoverer.discover().instances}

        orders = instances["orders"]
        assert orders.identifier.startswith("arn:aws:rds:us-east-1:")
        assert orders.identifier.endswith(":db:orders")
        assert orders.region == "us-east-1"
        assert orders.endpoint
        assert orders.port == 3306
        assert orders.tag_value("schemas_to_audit") == "orders"
        assert orders.has_tag("audit_growth", "true")

    @mock_aws
    def test_empty_region(self, mock_session):
        discoverer = RegionInstanceDiscoverer(ClientCache(mock_session), regions=["sa-east-1"])
        result = discoverer.discover()
        assert result.instances == []
        assert result.failed_regions == {}

    @mock_aws
    def test_serial_and_parallel_agree(self, mock_session):
        seed_fleet(mock_session)
        regions = ["us-east-1", "eu-west-1"]
        serial = RegionInstanceDiscoverer(
            ClientCache(mock_session), regions=regions, region_workers=1, tag_workers=1
        ).discover()
        parallel = RegionInstanceDiscoverer(
            ClientCache(mock_session), regions=regions, region_workers=4, tag_workers=4
        ).discover()

        assert sorted(i.identifier for i in serial.instances) == \
            sorted(i.identifier for i in parallel.instances)

    @mock_aws
    def test_tag_failure_keeps_instance(self, mock_session):
        seed_fleet(mock_session)
        clients = FaultyClientCache(mock_session, failing_tags=["billing"])
        discoverer = RegionInstanceDiscoverer(clients, regions=["us-east-1", "eu-west-1"])

        result = discoverer.discover()

        assert len(result.instances) == 5
        billing = next(i for i in result.instances if i.name == "billing")
        assert billing.tags == []
        assert result.tag_failures == [billing.identifier]
        orders = next(i for i in result.instances if i.name == "orders")
        assert orders.has_tag("audit_growth", "true")

    @mock_aws
    def test_region_failure_recorded(self, mock_session):
        seed_fleet(mock_session)
        clients = FaultyClientCache(mock_session, failing_regions=["eu-west-1"])
        discoverer = RegionInstanceDiscoverer(clients, regions=["us-east-1", "eu-west-1"])

        result = discoverer.discover()

        assert sorted(i.name for i in result.instances) == ["billing", "orders", "scratch"]
        assert list(result.failed_regions) == ["eu-west-1"]
        assert "region disabled" in result.failed_regions["eu-west-1"]

    @mock_aws
    def test_tag_filter(self, mock_session):
        seed_fleet(mock_session)
        discoverer = RegionInstanceDiscoverer(
            ClientCache(mock_session), regions=["us-east-1", "eu-west-1"]
        )

        result = discoverer.discover(tag_filter=("audit_growth", "true"))

        assert sorted(i.name for i in result.instances) == ["billing", "orders", "orders-eu"]

    @mock_aws
    def test_single_page_only(self, mock_session, caplog):
        for n in range(21):
            create_instance(mock_session, "us-east-1", f"db-{n:02d}")
        discoverer = RegionInstanceDiscoverer(
            ClientCache(mock_session), regions=["us-east-1"], page_size=20
        )

        with caplog.at_level(logging.WARNING):
            result = discoverer.discover()

        assert len(result.instances) == 20
        assert "later pages are not audited" in caplog.text


# =============================================================================
# Unit Tests (mocked client)
# =============================================================================

class TestBuildInstance:
    """Tests for turning describe_db_instances entries into Instances."""

    def test_missing_endpoint(self):
        rds = MagicMock()
        rds.list_tags_for_resource.return_value = {"TagList": [{"Key": "a", "Value": "1"}]}
        discoverer = RegionInstanceDiscoverer(MagicMock(), regions=["us-east-1"])

        instance, tags_ok = discoverer._build_instance(rds, "us-east-1", {
            "DBInstanceArn": "arn:aws:rds:us-east-1:123456789012:db:creating",
            "DBInstanceIdentifier": "creating",
        })

        assert tags_ok
        assert instance.endpoint == ""
        assert instance.port is None
        assert instance.tags == [Tag("a", "1")]

    def test_malformed_entry_skipped(self):
        rds = MagicMock()
        rds.describe_db_instances.return_value = {"DBInstances": [
            {"DBInstanceIdentifier": "no-arn"},
            {"DBInstanceArn": "arn:aws:rds:us-east-1:123456789012:db:ok", "DBInstanceIdentifier": "ok"},
        ]}
        rds.list_tags_for_resource.return_value = {"TagList": []}
        clients = MagicMock()
        clients.client.return_value = rds
        discoverer = RegionInstanceDiscoverer(clients, regions=["us-east-1"])

        instances, tag_failures = discoverer._list_region("us-east-1")

        assert [i.name for i in instances] == ["ok"]
        assert tag_failures == []
        rds.describe_db_instances.assert_called_once_with(MaxRecords=100)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
