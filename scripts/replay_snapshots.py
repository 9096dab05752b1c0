"""Replay a JSON-lines capture of timing payloads through the ingestion pipeline.

Usage:
  python scripts/replay_snapshots.py --db kart_timing.db capture.jsonl

Each line is either a bare payload (``{"N": ..., "D": [...]}``) or a wrapper
``{"receivedAt": "<ISO timestamp>", "payload": {...}}``; wrapped lines are
filed under the session date of their original arrival.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from kart_timing.config import PipelineConfig
from kart_timing.exceptions import ConcurrencyConflictError, InvalidPayloadError, StorageError
from kart_timing.web.service import IngestionService


def _split_line(record: dict) -> tuple[dict, datetime | None]:
    if "payload" in record:
        received = record.get("receivedAt")
        return record["payload"], datetime.fromisoformat(received) if received else None
    return record, None


def main() -> None:
    ap = argparse.ArgumentParser(description="Replay captured timing payloads")
    ap.add_argument("capture", help="JSON-lines file, one payload per line")
    ap.add_argument("--db", default=None, help="SQLite database path (default: $KART_TIMING_DB)")
    ap.add_argument("--tz", default=None, help="Venue timezone (default: $KART_TIMING_TZ)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.tz:
        overrides["venue_timezone"] = args.tz
    config = PipelineConfig.from_env(**overrides)

    path = Path(args.capture)
    if not path.exists():
        print(f"  [!] Capture not found: {path}", file=sys.stderr)
        sys.exit(1)

    svc = IngestionService.from_config(config)
    batches = recorded = duplicates = rejected = failed = 0
    try:
        with path.open(encoding="utf-8") as fh:
            for line_no, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    payload, received_at = _split_line(json.loads(line))
                    result = svc.process_batch(payload, received_at=received_at)
                except (json.JSONDecodeError, InvalidPayloadError) as exc:
                    print(f"  [!] line {line_no}: skipped ({exc})", file=sys.stderr)
                    continue
                except ConcurrencyConflictError as exc:
                    print(f"  [!] line {line_no}: not saved ({exc})", file=sys.stderr)
                    failed += 1
                    continue
                except StorageError as exc:
                    print(f"  [!] line {line_no}: storage failure ({exc})", file=sys.stderr)
                    sys.exit(2)
                batches += 1
                recorded += len(result.recorded)
                duplicates += len(result.duplicates)
                rejected += len(result.rejected)
                failed += len(result.failed)
    finally:
        svc.close()

    print(f"Database  : {config.db_path}")
    print(f"Batches   : {batches}")
    print(f"Laps      : {recorded} recorded, {duplicates} duplicate")
    print(f"Entries   : {rejected} rejected, {failed} failed")


if __name__ == "__main__":
    main()
