#!/usr/bin/env python3
"""
Supabase Record Store
====================================
Uploads a generated record snapshot to a Supabase instance and reads a
consistent snapshot back for report runs.

Setup:
    1. Create a Supabase project at https://supabase.com/dashboard
    2. Run the schema SQL in the Supabase SQL Editor:
       schema/supabase_schema.sql
    3. Get your project URL and service-role key from Project Settings -> API
    4. Run this script:

Usage:
    python supabase_records.py \\
        --url https://your-project.supabase.co \\
        --key your-anon-or-service-key

    # Or use environment variables:
    export SUPABASE_URL=https://your-project.supabase.co
    export SUPABASE_KEY=your-service-role-key
    python supabase_records.py

    # Download the stored records into a snapshot directory:
    python supabase_records.py --fetch --data-dir ./from_supabase

Author: Wington Brito
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Callable

from supabase import create_client, Client

from graduation_reports import (
    AdmissionQuota,
    Cohort,
    GraduationRecord,
    Program,
    RecordSnapshot,
    StudentRecord,
    record_from_row,
)

logger = logging.getLogger(__name__)

BATCH_SIZE = 100  # Supabase REST API limit per request
PAGE_SIZE = 1000  # PostgREST default max rows per select


def load_json(path: Path) -> list[dict]:
    """Load JSON file, return list of records."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return data if isinstance(data, list) else [data]


def upsert_batch(client: Client, table: str, records: list[dict], batch_size: int = BATCH_SIZE) -> int:
    """Upsert records in batches, falling back to one-by-one on a failed batch."""
    total = len(records)
    inserted = 0

    for i in range(0, total, batch_size):
        batch = records[i : i + batch_size]
        try:
            client.table(table).upsert(batch).execute()
            inserted += len(batch)
            print(f"  {table}: {inserted}/{total} records", end="\r")
        except Exception as e:
            logger.warning("Batch %s[%d:%d] failed: %s", table, i, i + len(batch), e)
            print(f"\n  ERROR on {table} batch {i}-{i + len(batch)}: {e}")
            for j, record in enumerate(batch):
                try:
                    client.table(table).upsert([record]).execute()
                    inserted += 1
                except Exception as e2:
                    logger.error("Skipped %s[%d]: %s", table, i + j, e2)
                    print(f"  SKIP {table}[{i + j}]: {e2}")

    print(f"  {table}: {inserted}/{total} records ✓")
    return inserted


# ──────────────────────────────────────────────────────────────────────────────
# TRANSFORMS (snapshot JSON rows <-> Supabase table rows)
# ──────────────────────────────────────────────────────────────────────────────

def transform_cohorts(records: list[dict]) -> list[dict]:
    """Map snapshot cohort rows to the generations table."""
    return [record_from_row(Cohort, r).to_supabase_row() for r in records]


def transform_programs(records: list[dict]) -> list[dict]:
    """Map snapshot program rows to the careers table."""
    return [record_from_row(Program, r).to_supabase_row() for r in records]


def transform_quotas(records: list[dict]) -> list[dict]:
    return [record_from_row(AdmissionQuota, r).to_supabase_row() for r in records]


def transform_students(records: list[dict]) -> list[dict]:
    return [record_from_row(StudentRecord, r).to_supabase_row() for r in records]


def transform_graduations(records: list[dict]) -> list[dict]:
    return [record_from_row(GraduationRecord, r).to_supabase_row() for r in records]


# (table, snapshot file, transform, record class), in foreign-key order
TABLES: list[tuple[str, str, Callable[[list[dict]], list[dict]], type]] = [
    ("generations", "cohorts.json", transform_cohorts, Cohort),
    ("careers", "programs.json", transform_programs, Program),
    ("quotas", "quotas.json", transform_quotas, AdmissionQuota),
    ("students", "students.json", transform_students, StudentRecord),
    ("graduations", "graduations.json", transform_graduations, GraduationRecord),
]


def rows_to_snapshot(rows_by_table: dict[str, list[dict[str, Any]]]) -> RecordSnapshot:
    """Map fetched table rows back to a read-only snapshot."""
    records: dict[str, list[Any]] = {}
    for table, filename, _, record_cls in TABLES:
        dataset = Path(filename).stem
        records[dataset] = [record_cls.from_supabase_row(r) for r in rows_by_table.get(table, [])]
    return RecordSnapshot(**records)


# ──────────────────────────────────────────────────────────────────────────────
# SEED / FETCH / MAINTENANCE
# ──────────────────────────────────────────────────────────────────────────────

def seed_database(client: Client, data_dir: Path) -> dict[str, int]:
    """Seed all tables from a snapshot directory."""
    results = {}

    for table_name, filename, transform_fn, _ in TABLES:
        path = data_dir / filename
        if not path.exists():
            print(f"  SKIP {table_name}: {filename} not found")
            continue

        records = transform_fn(load_json(path))

        print(f"\n  Seeding {table_name} ({len(records)} records)...")
        results[table_name] = upsert_batch(client, table_name, records)

    return results


def fetch_table(client: Client, table: str, page_size: int = PAGE_SIZE) -> list[dict[str, Any]]:
    """
    Read every row of a table, paging with range().

    Pages can come back shorter than page_size (PostgREST max-rows); paging
    advances by the rows returned and stops on an empty page.
    """
    rows: list[dict[str, Any]] = []
    start = 0
    while True:
        result = client.table(table).select("*").order("id").range(start, start + page_size - 1).execute()
        page = result.data or []
        if not page:
            break
        rows.extend(page)
        logger.debug("Fetched %s rows %d-%d", table, start, start + len(page))
        start += len(page)
    return rows


def fetch_snapshot(client: Client, page_size: int = PAGE_SIZE) -> RecordSnapshot:
    """Fetch all record tables into one snapshot."""
    rows_by_table = {table: fetch_table(client, table, page_size) for table, *_ in TABLES}
    snapshot = rows_to_snapshot(rows_by_table)
    logger.info("Fetched %r", snapshot)
    return snapshot


def clean_tables(client: Client):
    """Delete rows in reverse FK order for idempotent re-seeding."""
    print("\n  Cleaning existing data...")
    for table, *_ in reversed(TABLES):
        try:
            client.table(table).delete().neq("id", "00000000-0000-0000-0000-000000000000").execute()
            print(f"    {table}: cleared")
        except Exception as e:
            logger.error("Could not clear %s: %s", table, e)
            print(f"    {table}: ERROR: {e}")


def verify_data(client: Client) -> dict[str, int | None]:
    """Quick row-count verification of seeded data."""
    print("\n  Verification:")
    counts: dict[str, int | None] = {}
    for table, *_ in TABLES:
        try:
            result = client.table(table).select("id", count="exact").limit(1).execute()
            counts[table] = result.count
            print(f"    {table}: {result.count if result.count is not None else '?'} rows")
        except Exception as e:
            counts[table] = None
            logger.error("Could not verify %s: %s", table, e)
            print(f"    {table}: ERROR: {e}")
    return counts


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Seed or fetch graduation records in Supabase")
    parser.add_argument(
        "--url",
        default=os.environ.get("SUPABASE_URL", ""),
        help="Supabase project URL (or set SUPABASE_URL env var)",
    )
    parser.add_argument(
        "--key",
        default=os.environ.get("SUPABASE_KEY", os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")),
        help="Supabase API key, service_role recommended (or set SUPABASE_KEY env var)",
    )
    parser.add_argument(
        "--data-dir",
        default="./output",
        help="Snapshot directory (read when seeding, written with --fetch)",
    )
    parser.add_argument("--verify-only", action="store_true", help="Only verify existing data")
    parser.add_argument("--clean", action="store_true", help="Delete table rows before seeding (idempotent re-runs)")
    parser.add_argument("--dry-run", action="store_true", help="Preview record counts without connecting to Supabase")
    parser.add_argument("--fetch", action="store_true", help="Download all tables into --data-dir as a snapshot")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    data_dir = Path(args.data_dir)
    required = [filename for _, filename, *_ in TABLES]

    # Dry-run: validate data and report counts without connecting
    if args.dry_run:
        print("=" * 60)
        print("  Dry Run: Preview")
        print("=" * 60)
        for filename in required:
            path = data_dir / filename
            if path.exists():
                records = load_json(path)
                print(f"  {filename}: {len(records):,} records")
            else:
                print(f"  {filename}: NOT FOUND")
        print("\n  No data was written.")
        sys.exit(0)

    if not args.url or not args.key:
        print("ERROR: Supabase URL and key are required.")
        print()
        print("  Option 1: CLI args")
        print("    python supabase_records.py \\")
        print("        --url https://your-project.supabase.co \\")
        print("        --key your-service-role-key")
        print()
        print("  Option 2: env vars")
        print("    export SUPABASE_URL=https://your-project.supabase.co")
        print("    export SUPABASE_KEY=your-service-role-key")
        print("    python supabase_records.py")
        print()
        print("  Find these at: Supabase Dashboard -> Project Settings -> API")
        sys.exit(1)

    print("=" * 60)
    print("  Supabase Record Store")
    print("=" * 60)
    print(f"  URL: {args.url}")
    print(f"  Key: {args.key[:12]}...{args.key[-4:]}")
    print(f"  Data: {args.data_dir}")

    # Validate data files exist before connecting (fail fast)
    if not args.verify_only and not args.fetch:
        missing = [f for f in required if not (data_dir / f).exists()]
        if missing:
            print(f"\nERROR: Missing snapshot files in {data_dir}:")
            for f in missing:
                print(f"  - {f}")
            print("\nRun the generator first:")
            print("  python generate_graduation_records.py --output json")
            sys.exit(1)

    client = create_client(args.url, args.key)

    if args.verify_only:
        verify_data(client)
    elif args.fetch:
        snapshot = fetch_snapshot(client)
        files = snapshot.to_json(data_dir)
        print(f"\n  Fetched {snapshot!r}")
        print(f"  JSON -> {data_dir}/ ({len(files)} files)")
    else:
        if args.clean:
            clean_tables(client)

        results = seed_database(client, data_dir)
        verify_data(client)

        print("\n" + "=" * 60)
        total = sum(results.values())
        print(f"  Done! {total:,} records seeded across {len(results)} tables.")
        print("=" * 60)


if __name__ == "__main__":
    main()
