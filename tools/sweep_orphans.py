#!/usr/bin/env python3
"""
Run one orphan key reconciliation sweep against the configured backends.

Usage:
    python tools/sweep_orphans.py [--max-age-seconds N] [--dry-run]
"""

import argparse
import json
import sys

from record_custody import config
from record_custody.logging_config import configure_logging
from record_custody.main import build_gateway
from record_custody.reconciliation import sweep_orphans


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile keys that were never associated with a record")
    parser.add_argument("--max-age-seconds", type=int, default=config.ORPHAN_MAX_AGE_SECONDS)
    parser.add_argument("--dry-run", action="store_true", help="report decisions without changing the store")
    args = parser.parse_args(argv)

    configure_logging(config.LOG_LEVEL, json_format=config.LOG_JSON)
    gateway = build_gateway()
    try:
        report = sweep_orphans(gateway, max_age_seconds=args.max_age_seconds, dry_run=args.dry_run)
    finally:
        gateway.store.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
