#!/usr/bin/env python3
"""
Table Growth Audit - RDS Table Size Collector

Finds RDS instances tagged for auditing across regions, reads per-table
row counts and data/index sizes from each listed schema, and ships them
to Datadog or Sumo Logic. Runs as a scheduled batch job (CLI or Lambda).

Instance tags:
    audit_growth      = true                      (eligibility)
    schemas_to_audit  = orders:billing            (colon-separated)
    cred_path         = us-east-1:/rds/orders     (SSM parameter with
                                                   {"username", "password"})

Usage:
    # Datadog (DD_API_KEY / DD_APP_KEY from the environment)
    python3 growth_collect.py --environment production

    # Specific regions, Sumo Logic
    python3 growth_collect.py --environment staging --regions us-east-1,eu-west-1 --sink sumologic

    # Log metrics instead of sending them
    python3 growth_collect.py --environment dev --dry-run

    # Config file
    python3 growth_collect.py --config growth-audit.yaml --summary-file ./summary.json
"""
import argparse
import logging
import sys
from typing import Any, Dict

from growth_audit.config import build_audit_config, generate_sample_config, load_config
from growth_audit.constants import SINK_TYPES
from growth_audit.errors import ConfigurationError
from growth_audit.orchestrator import run_audit
from growth_audit.utils import print_run_summary, setup_logging, write_json

logger = logging.getLogger(__name__)


def lambda_handler(event: Dict[str, Any], context) -> Dict[str, Any]:
    """
    AWS Lambda handler: configuration comes from environment variables only.

    Args:
        event: Lambda event object (unused)
        context: Lambda context object

    Returns:
        The run summary as a dict
    """
    config = build_audit_config(load_config())
    setup_logging(config.effective_log_level)
    summary = run_audit(config)
    return summary.to_dict()


def main():
    parser = argparse.ArgumentParser(
        description='Table Growth Audit - RDS Table Size Collector',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Audit every tagged instance in the default regions
  python3 growth_collect.py --environment production

  # Restrict regions
  python3 growth_collect.py --environment production --regions us-east-1,us-west-2

  # Send flat records to a Sumo Logic HTTP source (SUMO_HTTP_URL)
  python3 growth_collect.py --environment production --sink sumologic

  # Dry run
  python3 growth_collect.py --environment dev --dry-run --log-level DEBUG
"""
    )

    parser.add_argument('--config', '-c', help='Path to YAML config file')
    parser.add_argument('--generate-config', action='store_true',
                        help='Generate a sample config file and exit')
    parser.add_argument('--environment', '-e', help='Environment label attached to every metric')
    parser.add_argument('--regions', help='Comma-separated list of regions (default: built-in list)')
    parser.add_argument('--sink', choices=SINK_TYPES, help='Metrics backend (default: datadog)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Log metrics instead of sending them')
    parser.add_argument('--page-size', type=int,
                        help='describe_db_instances page size per region (20-100)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    parser.add_argument('--debug', action='store_true', help='Shortcut for --log-level DEBUG')
    parser.add_argument('--output', '-o', help='Directory for the log file')
    parser.add_argument('--summary-file',
                        help='Write the run summary as JSON (local path or s3://bucket/key)')

    args = parser.parse_args()

    if args.generate_config:
        print(generate_sample_config())
        sys.exit(0)

    setup_logging(args.log_level or 'INFO')

    try:
        config = build_audit_config(load_config(args))
    except FileNotFoundError as e:
        logger.error(str(e))
        sys.exit(1)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config.effective_log_level, output_dir=config.output)
    logger.debug(f"Loaded configuration: {config}")

    summary = run_audit(config)
    result = summary.to_dict()

    if args.summary_file:
        write_json(result, args.summary_file)

    print_run_summary(result)


if __name__ == '__main__':
    main()
