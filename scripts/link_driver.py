"""Manually bind a timing-stream display name to a registered account.

Usage:
  python scripts/link_driver.py --db kart_timing.db --name "Juan Perez" --account acc_123

The binding is sticky: later sightings of the name resolve to the account's
identity with full confidence.
"""

from __future__ import annotations

import argparse
import logging
import sys

from kart_timing.config import PipelineConfig
from kart_timing.exceptions import AccountNotFoundError
from kart_timing.web.service import IngestionService


def main() -> None:
    ap = argparse.ArgumentParser(description="Bind a driver display name to an account")
    ap.add_argument("--db", default=None, help="SQLite database path (default: $KART_TIMING_DB)")
    ap.add_argument("--name", required=True, help="Display name as shown by the timing system")
    ap.add_argument("--account", required=True, help="Registered account id")
    ap.add_argument("--person-id", default=None, help="External person id, if known")
    ap.add_argument("--by", default=None, help="Who verified the binding")
    args = ap.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)-7s %(name)s: %(message)s")

    config = PipelineConfig.from_env(**({"db_path": args.db} if args.db else {}))
    svc = IngestionService.from_config(config)
    try:
        resolution = svc.manual_bind(args.name, args.account, args.person_id, args.by)
    except AccountNotFoundError as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        svc.close()

    print(f"Name      : {resolution.display_name}")
    print(f"Account   : {resolution.account_id}")
    print(f"Identity  : {resolution.identity_id}")
    print(f"Person id : {resolution.person_id or '-'}")


if __name__ == "__main__":
    main()
