#!/usr/bin/env python3
"""
Export all rows of a feed table (market_data, network_stats, blocks) from DuckDB to CSV.

Usage examples:
  python -m chain_data_feed.scripts.export_duckdb_table_to_csv \
    --duckdb data/chain_data_feed.duckdb \
    --table market_data \
    --out data/market_data.csv --overwrite

Notes:
  - Timestamps are written UTC-naive
  - By default prevents overwriting unless --overwrite is passed
"""
from __future__ import annotations

import argparse
from pathlib import Path
import sys
from typing import Optional

from chain_data_feed.bitcoin.db import TABLES, read_table_frame


def export_table(db_path: Path, table: str, out_path: Path, overwrite: bool = False) -> int:
    """Write `table` to `out_path`; returns the number of rows written."""
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if out_path.exists() and not overwrite:
        raise FileExistsError(f"Output exists: {out_path}. Pass --overwrite to replace.")
    df = read_table_frame(db_path, table)
    df.to_csv(out_path, index=False)
    return len(df)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description='Export a feed table from DuckDB to CSV')
    parser.add_argument('--duckdb', type=Path, required=True, help='Path to DuckDB file')
    parser.add_argument('--table', choices=TABLES, default='market_data', help='Feed table name')
    parser.add_argument('--out', type=Path, required=True, help='Output CSV path')
    parser.add_argument('--overwrite', action='store_true', help='Allow overwriting existing output file')
    args = parser.parse_args(argv)

    try:
        n = export_table(args.duckdb, args.table, args.out, overwrite=args.overwrite)
    except FileExistsError as e:
        print(f"ERROR: {e}")
        return 2

    if n:
        print(f"Wrote {n:,} rows to {args.out}")
    else:
        print(f"WARN: No rows in {args.table}; wrote empty CSV with header to {args.out}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
