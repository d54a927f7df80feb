#!/usr/bin/env python3
"""
Generate the SecretBox master key file used to seal keys at rest.

Usage:
    python tools/gen_master_key.py [--output secrets/custody_master_key.json] [--kid local-master-01]
"""

import argparse
import os
import sys

from record_custody.sealing import generate_master_key_file


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate a custody master key file")
    parser.add_argument("--output", default=os.getenv("CUSTODY_MASTER_KEY_PATH", "secrets/custody_master_key.json"))
    parser.add_argument("--kid", default="local-master-01")
    parser.add_argument("--force", action="store_true", help="overwrite an existing key file")
    args = parser.parse_args(argv)

    if os.path.exists(args.output) and not args.force:
        # replacing the master key makes every sealed key unreadable
        print(f"refusing to overwrite {args.output} (use --force)", file=sys.stderr)
        return 1

    os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
    kid = generate_master_key_file(args.output, kid=args.kid)
    print(f"Generated master key {kid} at {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
