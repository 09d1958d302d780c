"""CLI scripts for working with the stored feeds.

Scripts:
- export_duckdb_table_to_csv: Export a DuckDB feed table to CSV

Usage:
    python -m chain_data_feed.scripts.export_duckdb_table_to_csv --help
"""

__all__ = [
    "export_duckdb_table_to_csv",
]
