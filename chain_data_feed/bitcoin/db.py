from __future__ import annotations

import random
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import duckdb  # type: ignore
import pandas as pd

from .api import BlockRecord, MarketSample, NetworkSample


MARKET_TABLE = "market_data"
NETWORK_TABLE = "network_stats"
BLOCKS_TABLE = "blocks"
TABLES = (MARKET_TABLE, NETWORK_TABLE, BLOCKS_TABLE)

TS_FORMAT = "%Y-%m-%d %H:%M:%S"

# another process (cron tick, export, a second server) may hold the file lock
LOCK_TIMEOUT = 30.0
LOCK_MAX_DELAY = 0.5


class StorageError(Exception):
    """Query, connection or constraint failure in the store."""


def _is_lock_conflict(e: Exception) -> bool:
    return isinstance(e, duckdb.IOException) and "lock" in str(e).lower()


def _open(db_path: Path) -> duckdb.DuckDBPyConnection:
    """duckdb.connect, retrying with jittered backoff while another process holds the file lock."""
    deadline = time.monotonic() + LOCK_TIMEOUT
    delay = 0.01
    while True:
        try:
            return duckdb.connect(str(db_path))
        except duckdb.Error as e:
            if not _is_lock_conflict(e) or time.monotonic() >= deadline:
                raise
        time.sleep(delay + random.uniform(0, delay))
        delay = min(delay * 2, LOCK_MAX_DELAY)


@contextmanager
def connect(db_path: Path) -> Iterator[duckdb.DuckDBPyConnection]:
    """Open a connection for a single operation and always close it.

    Waits up to LOCK_TIMEOUT seconds for a lock held by another process.
    duckdb errors raised inside the block surface as StorageError.
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        con = _open(db_path)
    except (duckdb.Error, OSError) as e:
        raise StorageError(f"cannot open {db_path}: {e}") from e
    try:
        con.execute("SET TimeZone='UTC';")
        yield con
    except duckdb.Error as e:
        raise StorageError(str(e)) from e
    finally:
        con.close()


def _check_table(table: str) -> str:
    if table not in TABLES:
        raise ValueError(f"unknown table: {table}")
    return table


def _rows_as_dicts(cur: duckdb.DuckDBPyConnection) -> List[Dict[str, Any]]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, row)) for row in cur.fetchall()]


def ensure_tables(db_path: Path) -> None:
    with connect(db_path) as con:
        con.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {MARKET_TABLE} (
              timestamp TIMESTAMP,
              price_usd DOUBLE,
              volume_usd DOUBLE
            );
            """
        )
        con.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {NETWORK_TABLE} (
              timestamp TIMESTAMP,
              hash_rate DOUBLE,
              difficulty DOUBLE
            );
            """
        )
        # height is the natural key; upserts conflict on it
        con.execute(
            f"""
            CREATE TABLE IF NOT EXISTS {BLOCKS_TABLE} (
              block_hash VARCHAR,
              height BIGINT PRIMARY KEY,
              timestamp TIMESTAMP,
              tx_count INTEGER,
              size BIGINT,
              weight BIGINT
            );
            """
        )


def count_rows(db_path: Path, table: str) -> int:
    with connect(db_path) as con:
        res = con.execute(f"SELECT COUNT(*) FROM {_check_table(table)}").fetchone()
        return int(res[0])


def insert_market_sample(db_path: Path, sample: MarketSample) -> None:
    with connect(db_path) as con:
        con.execute(
            f"INSERT INTO {MARKET_TABLE} (timestamp, price_usd, volume_usd) VALUES (?, ?, ?)",
            [sample.timestamp, float(sample.price_usd), float(sample.volume_usd)],
        )


def insert_network_sample(db_path: Path, sample: NetworkSample) -> None:
    with connect(db_path) as con:
        con.execute(
            f"INSERT INTO {NETWORK_TABLE} (timestamp, hash_rate, difficulty) VALUES (?, ?, ?)",
            [sample.timestamp, float(sample.hash_rate), float(sample.difficulty)],
        )


def _frame_rows(df: pd.DataFrame, value_cols: List[str]) -> List[list]:
    return [
        [pd.Timestamp(row["timestamp"]).to_pydatetime()] + [float(row[c]) for c in value_cols]
        for _, row in df.iterrows()
    ]


def _bulk_insert(db_path: Path, sql: str, rows: List[list]) -> int:
    """executemany inside one transaction: either every row lands or none do."""
    if not rows:
        return 0
    with connect(db_path) as con:
        con.begin()
        try:
            con.executemany(sql, rows)
        except duckdb.Error:
            con.rollback()
            raise
        con.commit()
    return len(rows)


def insert_market_frame(db_path: Path, df: pd.DataFrame) -> int:
    """Bulk load market rows (timestamp, price_usd, volume_usd); one row inserted per frame row."""
    return _bulk_insert(
        db_path,
        f"INSERT INTO {MARKET_TABLE} (timestamp, price_usd, volume_usd) VALUES (?, ?, ?)",
        _frame_rows(df, ["price_usd", "volume_usd"]),
    )


def insert_network_frame(db_path: Path, df: pd.DataFrame) -> int:
    """Bulk load network rows (timestamp, hash_rate, difficulty); one row inserted per frame row."""
    return _bulk_insert(
        db_path,
        f"INSERT INTO {NETWORK_TABLE} (timestamp, hash_rate, difficulty) VALUES (?, ?, ?)",
        _frame_rows(df, ["hash_rate", "difficulty"]),
    )


def upsert_block(db_path: Path, block: BlockRecord) -> None:
    """Insert a block; if its height already exists, overwrite every non-key column."""
    with connect(db_path) as con:
        con.execute(
            f"""
            INSERT INTO {BLOCKS_TABLE} (block_hash, height, timestamp, tx_count, size, weight)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (height) DO UPDATE SET
              block_hash = EXCLUDED.block_hash,
              timestamp = EXCLUDED.timestamp,
              tx_count = EXCLUDED.tx_count,
              size = EXCLUDED.size,
              weight = EXCLUDED.weight;
            """,
            [block.block_hash, int(block.height), block.timestamp, int(block.tx_count), int(block.size), int(block.weight)],
        )


def latest_block_height(db_path: Path) -> int:
    """Highest stored block height, 0 when the table is empty."""
    with connect(db_path) as con:
        res = con.execute(f"SELECT COALESCE(MAX(height), 0) FROM {BLOCKS_TABLE}").fetchone()
        return int(res[0])


def read_market_data(db_path: Path) -> List[Dict[str, Any]]:
    with connect(db_path) as con:
        cur = con.execute(
            f"""
            SELECT strftime(timestamp, '{TS_FORMAT}') AS timestamp, price_usd, volume_usd
            FROM {MARKET_TABLE}
            ORDER BY timestamp ASC
            """
        )
        return _rows_as_dicts(cur)


def read_network_data(db_path: Path) -> List[Dict[str, Any]]:
    with connect(db_path) as con:
        cur = con.execute(
            f"""
            SELECT strftime(timestamp, '{TS_FORMAT}') AS timestamp, hash_rate, difficulty
            FROM {NETWORK_TABLE}
            ORDER BY timestamp ASC
            """
        )
        return _rows_as_dicts(cur)


def read_latest_block(db_path: Path) -> Optional[Dict[str, Any]]:
    with connect(db_path) as con:
        cur = con.execute(
            f"""
            SELECT block_hash, height, strftime(timestamp, '{TS_FORMAT}') AS timestamp, tx_count, size, weight
            FROM {BLOCKS_TABLE}
            ORDER BY height DESC
            LIMIT 1
            """
        )
        rows = _rows_as_dicts(cur)
        return rows[0] if rows else None


def read_table_frame(db_path: Path, table: str) -> pd.DataFrame:
    order = "height" if table == BLOCKS_TABLE else "timestamp"
    with connect(db_path) as con:
        return con.execute(f"SELECT * FROM {_check_table(table)} ORDER BY {order}").fetch_df()


def coverage_stats(db_path: Path, table: str) -> Optional[tuple[pd.Timestamp, pd.Timestamp, int]]:
    with connect(db_path) as con:
        q = f"SELECT MIN(timestamp), MAX(timestamp), COUNT(*) FROM {_check_table(table)}"
        res = con.execute(q).fetchone()
        if res is None or res[0] is None:
            return None
        return pd.Timestamp(res[0]), pd.Timestamp(res[1]), int(res[2])
