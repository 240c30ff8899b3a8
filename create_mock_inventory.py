#!/usr/bin/env python3
"""
Utility to seed a bucket with empty objects named like real backups.

Useful for exercising the backup pruner against a test bucket without
waiting for a database server to produce months of real backups.
"""
from __future__ import annotations

import argparse
import re
import sys
from datetime import datetime, timedelta
from typing import Iterable, List

from backup_pruner import client_for, merge_config
from retention import FULL_BACKUP_TYPE


KEY_DATE_FORMAT = "%Y%m%d_%H%M%S"
DEFAULT_EXTENSION = "bak"
DURATION_TERM = re.compile(r"(\d+)([wdhms])")
DURATION_UNITS = {"w": "weeks", "d": "days", "h": "hours", "m": "minutes", "s": "seconds"}


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create mock backup objects in an S3-compatible bucket."
    )
    parser.add_argument("--bucket", required=True, help="Bucket that receives the objects.")
    parser.add_argument(
        "--object-name",
        default="Orders",
        help="Logical name of the backed up entity (default: Orders).",
    )
    parser.add_argument(
        "--type",
        dest="backup_type",
        default=FULL_BACKUP_TYPE,
        help="Backup type encoded in the directory name (default: full).",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=1,
        help="Number of backups to create (default: 1).",
    )
    parser.add_argument(
        "--parts",
        type=int,
        default=1,
        help="Number of parts per backup; more than one adds -<part> suffixes.",
    )
    parser.add_argument(
        "--start",
        help="ISO timestamp of the first backup (default: now).",
    )
    parser.add_argument(
        "--timestamp-step",
        default="1d",
        help="Increment between successive backups (e.g. 6h, 1d12h, 1w). Default: 1d.",
    )
    parser.add_argument("--endpoint-url", default="", help="S3 endpoint for non-AWS stores.")
    parser.add_argument("--aws-region", default="us-east-1", help="Region for the S3 client.")
    parser.add_argument("--aws-profile", default="", help="Named AWS credentials profile.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the keys without writing any objects.",
    )
    return parser.parse_args(argv)


def parse_duration(value: str) -> timedelta:
    """Parse a step such as ``90``, ``6h`` or ``1d12h``; bare numbers are seconds."""
    text = value.strip().lower()
    if text.isdigit():
        step = timedelta(seconds=int(text))
    else:
        terms = DURATION_TERM.findall(text)
        if not text or "".join(amount + unit for amount, unit in terms) != text:
            raise ValueError(f"Invalid duration value: {value!r}")
        step = sum(
            (timedelta(**{DURATION_UNITS[unit]: int(amount)}) for amount, unit in terms),
            timedelta(),
        )
    if step <= timedelta():
        raise ValueError(f"Duration must be positive: {value!r}")
    return step


def mock_backup_keys(
    object_name: str,
    backup_type: str,
    timestamp: datetime,
    parts: int = 1,
    extension: str = DEFAULT_EXTENSION,
) -> List[str]:
    stamp = timestamp.strftime(KEY_DATE_FORMAT)
    directory = f"backups-{backup_type}"
    if parts <= 1:
        return [f"{directory}/{object_name}_{stamp}-{backup_type}.{extension}"]
    return [
        f"{directory}/{object_name}_{stamp}-{backup_type}-{part}.{extension}"
        for part in range(1, parts + 1)
    ]


def build_inventory(
    object_name: str,
    backup_type: str,
    start: datetime,
    step: timedelta,
    count: int,
    parts: int = 1,
) -> List[str]:
    keys: List[str] = []
    for index in range(count):
        keys.extend(mock_backup_keys(object_name, backup_type, start + step * index, parts))
    return keys


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)

    if args.count <= 0:
        print("Error: --count must be a positive integer.")
        return 2
    if args.parts <= 0:
        print("Error: --parts must be a positive integer.")
        return 2

    try:
        step = parse_duration(args.timestamp_step)
        start = datetime.fromisoformat(args.start) if args.start else datetime.now()
    except ValueError as error:
        print(f"Error: {error}")
        return 2

    keys = build_inventory(
        args.object_name, args.backup_type.lower(), start, step, args.count, args.parts
    )

    if args.dry_run:
        for key in keys:
            print(f"Would create mock backup: s3://{args.bucket}/{key}")
        return 0

    config = merge_config(
        {
            "buckets": args.bucket,
            "endpoint_url": args.endpoint_url,
            "aws_region": args.aws_region,
            "aws_profile": args.aws_profile,
        }
    )
    client = client_for(config)
    for key in keys:
        client.put_object(Bucket=args.bucket, Key=key, Body=b"")
        print(f"Created mock backup: s3://{args.bucket}/{key}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
