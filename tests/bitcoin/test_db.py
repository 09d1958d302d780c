from __future__ import annotations

import multiprocessing
from concurrent.futures import ProcessPoolExecutor
from datetime import datetime

import duckdb  # type: ignore
import pandas as pd
import pytest

import store_workers
from chain_data_feed.bitcoin import db as db_mod
from chain_data_feed.bitcoin.api import BlockRecord, MarketSample, NetworkSample
from chain_data_feed.bitcoin.db import (
    BLOCKS_TABLE,
    MARKET_TABLE,
    NETWORK_TABLE,
    StorageError,
    count_rows,
    coverage_stats,
    insert_market_frame,
    insert_market_sample,
    insert_network_sample,
    latest_block_height,
    read_latest_block,
    read_market_data,
    read_network_data,
    read_table_frame,
    upsert_block,
)


def _block(height: int, block_hash: str, tx_count: int = 10) -> BlockRecord:
    return BlockRecord(
        block_hash=block_hash,
        height=height,
        timestamp=datetime(2024, 1, 1, 12, 0, 0),
        tx_count=tx_count,
        size=1000 + tx_count,
        weight=4000 + tx_count,
    )


def test_empty_tables(db_path):
    for table in (MARKET_TABLE, NETWORK_TABLE, BLOCKS_TABLE):
        assert count_rows(db_path, table) == 0
        assert coverage_stats(db_path, table) is None
    assert latest_block_height(db_path) == 0
    assert read_latest_block(db_path) is None


def test_count_rows_rejects_unknown_table(db_path):
    with pytest.raises(ValueError):
        count_rows(db_path, "market_data; DROP TABLE blocks")


def test_market_rows_read_back_ascending(db_path):
    insert_market_sample(db_path, MarketSample(datetime(2024, 1, 1, 10, 0, 0), 42000.5, 1.5e10))
    insert_market_sample(db_path, MarketSample(datetime(2024, 1, 1, 9, 0, 0), 41000.0, 1.4e10))
    rows = read_market_data(db_path)
    assert rows == [
        {"timestamp": "2024-01-01 09:00:00", "price_usd": 41000.0, "volume_usd": 1.4e10},
        {"timestamp": "2024-01-01 10:00:00", "price_usd": 42000.5, "volume_usd": 1.5e10},
    ]


def test_market_inserts_do_not_dedup(db_path):
    s = MarketSample(datetime(2024, 1, 1, 10, 0, 0), 1.0, 2.0)
    insert_market_sample(db_path, s)
    insert_market_sample(db_path, s)
    assert count_rows(db_path, MARKET_TABLE) == 2


def test_insert_market_frame_one_row_per_frame_row(db_path):
    df = pd.DataFrame(
        {
            "timestamp": pd.to_datetime([1, 2, 3], unit="s"),
            "price_usd": [100.0, 110.0, 120.0],
            "volume_usd": [5.0, 6.0, 7.0],
        }
    )
    assert insert_market_frame(db_path, df) == 3
    assert insert_market_frame(db_path, df.iloc[0:0]) == 0
    assert count_rows(db_path, MARKET_TABLE) == 3


def test_network_rows_read_back(db_path):
    insert_network_sample(db_path, NetworkSample(datetime(2024, 2, 1), 6.1e8, 7.2e13))
    assert read_network_data(db_path) == [
        {"timestamp": "2024-02-01 00:00:00", "hash_rate": 6.1e8, "difficulty": 7.2e13}
    ]


def test_upsert_block_overwrites_same_height(db_path):
    upsert_block(db_path, _block(800000, "aaa", tx_count=10))
    upsert_block(db_path, _block(800000, "bbb", tx_count=20))

    assert count_rows(db_path, BLOCKS_TABLE) == 1
    latest = read_latest_block(db_path)
    assert latest == {
        "block_hash": "bbb",
        "height": 800000,
        "timestamp": "2024-01-01 12:00:00",
        "tx_count": 20,
        "size": 1020,
        "weight": 4020,
    }


def test_latest_block_height_is_max(db_path):
    upsert_block(db_path, _block(800002, "c"))
    upsert_block(db_path, _block(800001, "b"))
    assert latest_block_height(db_path) == 800002
    assert read_latest_block(db_path)["block_hash"] == "c"
    assert list(read_table_frame(db_path, BLOCKS_TABLE)["height"]) == [800001, 800002]


def test_coverage_stats(db_path):
    insert_market_sample(db_path, MarketSample(datetime(2024, 1, 1, 8), 1.0, 1.0))
    insert_market_sample(db_path, MarketSample(datetime(2024, 1, 1, 11), 1.0, 1.0))
    tmin, tmax, cnt = coverage_stats(db_path, MARKET_TABLE)
    assert str(tmin) == "2024-01-01 08:00:00"
    assert str(tmax) == "2024-01-01 11:00:00"
    assert cnt == 2


def test_missing_table_is_storage_error(tmp_path):
    path = tmp_path / "bare.duckdb"
    con = duckdb.connect(str(path))
    con.close()
    with pytest.raises(StorageError):
        count_rows(path, MARKET_TABLE)
    with pytest.raises(StorageError):
        upsert_block(path, _block(1, "x"))


def test_bulk_insert_is_all_or_nothing(db_path):
    sql = f"INSERT INTO {BLOCKS_TABLE} (block_hash, height, timestamp, tx_count, size, weight) VALUES (?, ?, ?, 1, 1, 1)"
    ts = datetime(2024, 1, 1)
    rows = [["a", 1, ts], ["b", 2, ts], ["dup", 2, ts], ["c", 3, ts]]
    with pytest.raises(StorageError):
        db_mod._bulk_insert(db_path, sql, rows)
    assert count_rows(db_path, BLOCKS_TABLE) == 0


def test_connect_waits_for_lock_held_elsewhere(db_path, monkeypatch):
    real_connect = duckdb.connect
    attempts = []

    def locked_twice(path, *args, **kwargs):
        attempts.append(path)
        if len(attempts) <= 2:
            raise duckdb.IOException(f'IO Error: Could not set lock on file "{path}": Conflicting lock is held')
        return real_connect(path, *args, **kwargs)

    sleeps = []
    monkeypatch.setattr(db_mod.duckdb, "connect", locked_twice)
    monkeypatch.setattr(db_mod.time, "sleep", sleeps.append)
    assert count_rows(db_path, MARKET_TABLE) == 0
    assert len(attempts) == 3
    assert len(sleeps) == 2


def test_connect_gives_up_after_lock_timeout(db_path, monkeypatch):
    def always_locked(path, *args, **kwargs):
        raise duckdb.IOException("IO Error: Could not set lock on file")

    monkeypatch.setattr(db_mod.duckdb, "connect", always_locked)
    monkeypatch.setattr(db_mod, "LOCK_TIMEOUT", 0.0)
    with pytest.raises(StorageError, match="lock"):
        count_rows(db_path, MARKET_TABLE)


def test_connect_does_not_retry_other_io_errors(tmp_path, monkeypatch):
    calls = []

    def broken(path, *args, **kwargs):
        calls.append(path)
        raise duckdb.IOException("IO Error: Cannot open file: permission denied")

    monkeypatch.setattr(db_mod.duckdb, "connect", broken)
    with pytest.raises(StorageError):
        count_rows(tmp_path / "x.duckdb", MARKET_TABLE)
    assert len(calls) == 1


def test_writer_and_reader_processes_share_one_file(db_path):
    ctx = multiprocessing.get_context("spawn")
    with ProcessPoolExecutor(max_workers=2, mp_context=ctx) as pool:
        writer = pool.submit(store_workers.write_samples, str(db_path), 100)
        reader = pool.submit(store_workers.read_samples, str(db_path), 100)
        assert writer.result(timeout=120) == 0
        assert reader.result(timeout=120) == 0
    assert count_rows(db_path, MARKET_TABLE) == 100
