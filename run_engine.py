#!/usr/bin/env python3
"""
CLI for the utility territory engine.

Usage:
    python run_engine.py 75701
    python run_engine.py 75001 --address "1234 Main St"
    python run_engine.py --batch zips.csv --output results.csv
    python run_engine.py --health
"""

import argparse
import csv
import json
import logging
import sys
import time
from pathlib import Path

from territory_engine.config import Config
from territory_engine.engine import TerritoryEngine
from territory_engine.errors import TerritoryError


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def single_lookup(engine: TerritoryEngine, zip_code: str, address: str = None,
                  precise: bool = False) -> int:
    """Resolve one ZIP and print JSON. Returns the process exit code."""
    try:
        mapping = engine.resolve(zip_code, address=address, address_precision=precise)
    except TerritoryError as e:
        out = {"error": type(e).__name__, "detail": str(e),
               "mapping": e.mapping.to_dict() if e.mapping else None}
        if hasattr(e, "candidates"):
            out["candidates"] = e.candidates
        print(json.dumps(out, indent=2))
        return 2
    print(json.dumps(mapping.to_dict(), indent=2))
    return 0


def batch_lookup(engine: TerritoryEngine, input_csv: str, output_csv: str):
    """Resolve every ZIP in a CSV (column 'zip', 'zip_code' or the first column)."""
    zips = []
    with open(input_csv, "r") as f:
        reader = csv.DictReader(f)
        zip_col = None
        for col in reader.fieldnames or []:
            if col.lower() in ("zip", "zip_code", "zipcode", "postal_code"):
                zip_col = col
                break
        if not zip_col:
            zip_col = (reader.fieldnames or ["zip"])[0]
        for row in reader:
            z = (row.get(zip_col) or "").strip()
            if z:
                zips.append(z.zfill(5) if z.isdigit() else z)

    print(f"Loaded {len(zips)} ZIPs from {input_csv}")
    t0 = time.time()
    results = engine.resolve_many(zips)

    with open(output_csv, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow([
            "zip", "territory_id", "territory_name", "service_type", "outcome",
            "confidence", "source_id", "tier", "city", "error",
        ])
        for z, r in results.items():
            if isinstance(r, TerritoryError):
                m = r.mapping
                writer.writerow([
                    z, m.territory_id if m else "", m.territory_name if m else "",
                    m.service_type.value if m else "", m.outcome if m else "",
                    m.confidence if m else "", m.source_id if m else "", m.tier if m else "",
                    m.city_display_name if m else "", type(r).__name__,
                ])
            else:
                writer.writerow([
                    z, r.territory_id, r.territory_name, r.service_type.value, r.outcome,
                    r.confidence, r.source_id, r.tier, r.city_display_name, "",
                ])

    errors = sum(1 for r in results.values() if isinstance(r, TerritoryError))
    print(f"Wrote {len(results)} results to {output_csv} ({errors} errors, {time.time() - t0:.1f}s)")


def main():
    parser = argparse.ArgumentParser(description="Utility Territory Engine")
    parser.add_argument("zip", nargs="?", help="ZIP code to resolve")
    parser.add_argument("--address", help="Street address (required for boundary ZIPs)")
    parser.add_argument("--precise", action="store_true", help="Force address-level resolution")
    parser.add_argument("--batch", help="Input CSV file of ZIPs")
    parser.add_argument("--output", default="results.csv", help="Output CSV for batch mode")
    parser.add_argument("--health", action="store_true", help="Print data source health and exit")
    parser.add_argument("--db", help="Path to the mapping store (SQLite)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")

    args = parser.parse_args()
    setup_logging(args.verbose)

    if not args.zip and not args.batch and not args.health:
        parser.print_help()
        sys.exit(1)

    config = Config.from_env()
    if args.db:
        config.store_db = Path(args.db)

    engine = TerritoryEngine(config)
    try:
        if args.health:
            print(json.dumps(engine.source_health(), indent=2))
        elif args.batch:
            batch_lookup(engine, args.batch, args.output)
        else:
            sys.exit(single_lookup(engine, args.zip, args.address, args.precise))
    finally:
        engine.close()


if __name__ == "__main__":
    main()
