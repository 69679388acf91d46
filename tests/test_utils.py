"""
Tests for growth_audit/utils.py utility functions.

Covers:
- generate_run_id format and uniqueness
- get_timestamp format
- retry_with_backoff decorator
- fan_out serial/parallel execution and per-branch errors
- ClientCache reuse
- mask_account_id, hash_sensitive_id and log redaction
- setup_logging levels and file output
- write_json (local files) and S3 uploads
- print_run_summary rendering
"""
import json
import logging
import os
import sys
import threading
import time
from io import StringIO
from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws
from rich.console import Console

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from growth_audit.utils import (
    ClientCache,
    RedactingFilter,
    fan_out,
    generate_run_id,
    get_timestamp,
    hash_sensitive_id,
    mask_account_id,
    print_run_summary,
    redact_log_message,
    retry_with_backoff,
    setup_logging,
    split_s3_path,
    write_json,
    write_to_s3,
)


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


# =============================================================================
# generate_run_id / get_timestamp Tests
# =============================================================================

class TestGenerateRunId:
    """Tests for generate_run_id function."""

    def test_run_id_format(self):
        """Run ID has the format YYYYMMDD-HHMMSS-xxxxxxxx."""
        parts = generate_run_id().split('-')

        assert len(parts) == 3
        assert len(parts[0]) == 8 and parts[0].isdigit()
        assert len(parts[1]) == 6 and parts[1].isdigit()
        assert len(parts[2]) == 8

    def test_run_id_uniqueness(self):
        ids = [generate_run_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestGetTimestamp:
    """Tests for get_timestamp function."""

    def test_timestamp_format(self):
        ts = get_timestamp()
        assert ts.endswith('Z')

        from datetime import datetime
        datetime.fromisoformat(ts.replace('Z', '+00:00'))


# =============================================================================
# retry_with_backoff Tests
# =============================================================================

class TestRetryWithBackoff:
    """Tests for retry_with_backoff decorator."""

    def test_no_retry_on_success(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3)
        def successful_func():
            nonlocal call_count
            call_count += 1
            return "success"

        assert successful_func() == "success"
        assert call_count == 1

    def test_retry_on_failure(self):
        call_count = 0

        @retry_with_backoff(max_attempts=3, min_wait=0.01, max_wait=0.1)
        def failing_func():
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise ValueError("Not yet")
            return "success"

        assert failing_func() == "success"
        assert call_count == 3

    def test_max_attempts_exceeded(self):
        call_count = 0

        @retry_with_backoff(max_attempts=2, min_wait=0.01, max_wait=0.1)
        def always_fails():
            nonlocal call_count
            call_count += 1
            raise ConnectionError("Always fails")

        with pytest.raises(ConnectionError, match="Always fails"):
            always_fails()
        assert call_count == 2

    def test_specific_exception_types(self):
        """Only the listed exception types are retried."""
        call_count = 0

        @retry_with_backoff(max_attempts=3, exceptions=(ValueError,), min_wait=0.01)
        def specific_error():
            nonlocal call_count
            call_count += 1
            raise TypeError("Not retryable")

        with pytest.raises(TypeError):
            specific_error()
        assert call_count == 1


# =============================================================================
# fan_out Tests
# =============================================================================

class TestFanOut:
    """Tests for the bounded fan-out helper."""

    def test_empty(self):
        assert fan_out(lambda x: x, []) == []

    def test_serial(self):
        results = fan_out(lambda x: x * 2, [1, 2, 3], max_workers=1)
        assert [(r.item, r.result, r.error) for r in results] == [
            (1, 2, None), (2, 4, None), (3, 6, None),
        ]

    def test_parallel_returns_every_item(self):
        results = fan_out(lambda x: x * x, range(50), max_workers=8)
        assert sorted(r.result for r in results) == [x * x for x in range(50)]

    def test_errors_are_returned(self):
        def work(x):
            if x == 3:
                raise RuntimeError("boom")
            return x

        for workers in (1, 4):
            results = fan_out(work, [1, 2, 3, 4], max_workers=workers)
            failed = [r for r in results if r.error is not None]
            assert len(results) == 4
            assert [r.item for r in failed] == [3]
            assert str(failed[0].error) == "boom"
            assert failed[0].result is None

    def test_runs_concurrently(self):
        barrier = threading.Barrier(4, timeout=5)

        def work(x):
            barrier.wait()
            return x

        results = fan_out(work, range(4), max_workers=4)
        assert all(r.error is None for r in results)

    def test_worker_bound(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def work(x):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return x

        fan_out(work, range(20), max_workers=3)
        assert peak <= 3


# =============================================================================
# ClientCache Tests
# =============================================================================

class TestClientCache:
    """Tests for ClientCache."""

    def test_client_reused_per_service_and_region(self):
        session = MagicMock()
        session.client.side_effect = lambda service, region_name, config: MagicMock()
        cache = ClientCache(session)

        first = cache.client('rds', 'us-east-1')
        assert cache.client('rds', 'us-east-1') is first
        assert cache.client('rds', 'eu-west-1') is not first
        assert cache.client('ssm', 'us-east-1') is not first
        assert session.client.call_count == 3


# =============================================================================
# Redaction Tests
# =============================================================================

class TestMaskAccountId:
    """Tests for mask_account_id function."""

    def test_mask_rds_arn(self):
        arn = "arn:aws:rds:us-east-1:123456789012:db:orders"
        assert mask_account_id(arn) == "arn:aws:rds:us-east-1:***:db:orders"

    def test_mask_empty_string(self):
        assert mask_account_id("") == ""

    def test_no_account_id(self):
        assert mask_account_id("orders") == "orders"


class TestHashSensitiveId:
    """Tests for hash_sensitive_id function."""

    def test_consistent(self):
        assert hash_sensitive_id("123456789012") == hash_sensitive_id("123456789012")
        assert len(hash_sensitive_id("123456789012")) == 8

    def test_with_prefix(self):
        assert hash_sensitive_id("123456789012", prefix="acc-").startswith("acc-")

    def test_empty(self):
        assert hash_sensitive_id("") == ""


class TestRedactLogMessage:
    """Tests for log message redaction."""

    def test_arn(self):
        message = redact_log_message("Failed for arn:aws:rds:us-east-1:123456789012:db:orders")
        assert "123456789012" not in message
        assert ":db:orders" not in message
        assert "arn:aws:rds:us-east-1:" in message

    def test_account_id(self):
        message = redact_log_message("account 123456789012 denied")
        assert message == f"account acc-{hash_sensitive_id('123456789012')} denied"

    def test_rds_endpoint(self):
        message = redact_log_message("connect to orders.abc123.us-east-1.rds.amazonaws.com failed")
        assert "orders.abc123" not in message
        assert ".us-east-1.rds.amazonaws.com" in message
        assert "redacted-" in message

    def test_plain_message_unchanged(self):
        assert redact_log_message("Found 12 DB instances") == "Found 12 DB instances"

    def test_filter_redacts_args(self):
        record = logging.LogRecord(
            "test", logging.INFO, __file__, 1, "region %s account %s", ("us-east-1", "123456789012"), None
        )
        assert RedactingFilter().filter(record)
        assert "123456789012" not in record.getMessage()


# =============================================================================
# setup_logging Tests
# =============================================================================

class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_levels(self):
        for level, expected in (("INFO", logging.INFO), ("debug", logging.DEBUG), ("WARNING", logging.WARNING)):
            setup_logging(level)
            assert logging.getLogger().level == expected

    def test_unknown_level_defaults_to_info(self):
        setup_logging("LOUD")
        assert logging.getLogger().level == logging.INFO

    def test_console_format(self):
        setup_logging("INFO")
        formatter = logging.getLogger().handlers[0].formatter
        assert formatter._fmt == "%(asctime)s - %(levelname)s - %(message)s"
        assert formatter.datefmt == "%Y-%m-%d %H:%M:%S"

    def test_file_output_is_redacted(self, tmp_path):
        setup_logging("INFO", output_dir=str(tmp_path))
        logging.getLogger("growth_audit.test").info("account 123456789012 listed")
        for handler in logging.getLogger().handlers:
            handler.flush()

        log_files = list(tmp_path.glob("growth_audit_*.log"))
        assert len(log_files) == 1
        content = log_files[0].read_text()
        assert "listed" in content
        assert "123456789012" not in content

        setup_logging("INFO")


# =============================================================================
# write_json Tests
# =============================================================================

class TestWriteJson:
    """Tests for write_json function."""

    def test_write_local_file(self, tmp_path):
        filepath = str(tmp_path / "summary.json")
        data = {"run_id": "r", "failed_regions": {"eu-west-1": "denied"}, "finished_at": None}

        write_json(data, filepath)

        with open(filepath) as f:
            assert json.load(f) == data
        assert os.stat(filepath).st_mode & 0o777 == 0o600

    def test_overwrite(self, tmp_path):
        filepath = str(tmp_path / "summary.json")
        write_json({"a": 1, "b": 2}, filepath)
        write_json({"a": 3}, filepath)
        with open(filepath) as f:
            assert json.load(f) == {"a": 3}


class TestWriteToS3:
    """Tests for s3:// summary uploads."""

    def test_split_s3_path(self):
        assert split_s3_path("s3://audits/growth/run.json") == ("audits", "growth/run.json")
        assert split_s3_path("s3://audits") == ("audits", "summary.json")
        assert split_s3_path("s3://audits/") == ("audits", "summary.json")

    @mock_aws
    def test_upload(self, aws_credentials):
        session = boto3.Session(region_name="us-east-1")
        session.client("s3").create_bucket(Bucket="audits")

        write_to_s3({"run_id": "r", "metrics_shipped": 3}, "s3://audits/growth/run.json", session=session)

        body = session.client("s3").get_object(Bucket="audits", Key="growth/run.json")["Body"].read()
        assert json.loads(body) == {"run_id": "r", "metrics_shipped": 3}

    @mock_aws
    def test_missing_bucket_raises(self, aws_credentials):
        session = boto3.Session(region_name="us-east-1")
        with pytest.raises(ClientError):
            write_to_s3({"run_id": "r"}, "s3://no-such-bucket/run.json", session=session)


# =============================================================================
# print_run_summary Tests
# =============================================================================

class TestPrintRunSummary:
    """Tests for the rich summary table."""

    def test_renders_counts_and_failures(self):
        output = StringIO()
        console = Console(file=output, width=120)

        print_run_summary({
            "run_id": "20240101-000000-abcd1234",
            "regions": ["us-east-1", "eu-west-1"],
            "failed_regions": {"eu-west-1": "denied"},
            "instances_discovered": 5,
            "instances_eligible": 3,
            "instances_succeeded": 2,
            "instances_failed": {"arn:aws:rds:us-east-1:123456789012:db:billing": "no credentials"},
            "schemas_succeeded": 4,
            "schemas_failed": {},
            "tables_collected": 1234,
            "metrics_shipped": 1230,
            "metrics_failed": 4,
        }, console=console)

        text = output.getvalue()
        assert "1/2 ok" in text
        assert "1,234" in text
        assert "eu-west-1" in text
        assert "no credentials" in text
        assert "123456789012" not in text


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
