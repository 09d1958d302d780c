"""Ingestion scheduler: bootstrap backfill plus three independent periodic feeds.

Feeds
- market  (default every 5 min): latest BTC/USD price + volume, appended as one row
- network (default every 60 min): latest hash rate + difficulty, appended as one row
- block   (default every 10 s): chain tip, upserted only when taller than the stored tip

Each tick runs inside run_tick(), which logs and swallows feed and storage failures
so a failing tick never stops its own schedule or the other feeds.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .api import (
    DIFFICULTY,
    HASH_RATE,
    BlockRecord,
    DecodeError,
    EmptySeriesError,
    FeedError,
    Fetcher,
    MarketSample,
    NetworkSample,
    TransportError,
    block_record,
    fetch_block_by_height,
    fetch_latest_block_height,
    fetch_market_series,
    fetch_network_series,
    http_get,
    latest_market_sample,
    latest_network_sample,
    market_series_to_dataframe,
    network_series_to_dataframe,
)
from .db import (
    MARKET_TABLE,
    NETWORK_TABLE,
    StorageError,
    count_rows,
    ensure_tables,
    insert_market_frame,
    insert_market_sample,
    insert_network_frame,
    insert_network_sample,
    latest_block_height,
    upsert_block,
)
from .persistence import PersistConfig, now_utc_run_id, write_raw_snapshot


logger = logging.getLogger(__name__)

MARKET = "market"
NETWORK = "network"
BLOCK = "block"
FEEDS = (MARKET, NETWORK, BLOCK)


@dataclass
class IngestConfig:
    db_path: Path
    market_interval: int = 300
    network_interval: int = 3600
    block_interval: int = 10
    bootstrap_days: str = "365"
    bootstrap_timespan: str = "1year"
    latest_days: str = "1"
    latest_timespan: str = "1days"
    network_align: str = "index"
    align_tolerance: int = 3600
    persist_dir: Optional[Path] = None
    bootstrap_attempts: int = 1
    bootstrap_retry_delay: float = 30.0

    def interval_for(self, feed: str) -> int:
        return {
            MARKET: self.market_interval,
            NETWORK: self.network_interval,
            BLOCK: self.block_interval,
        }[feed]


@dataclass(frozen=True)
class BootstrapResult:
    market_rows: int
    network_rows: int


def _snapshot(cfg: IngestConfig, run_id: str, feed: str, df) -> None:
    if cfg.persist_dir is None:
        return
    path = write_raw_snapshot(PersistConfig(cfg.persist_dir), run_id, feed, df)
    logger.debug("Wrote %s bootstrap snapshot: %s", feed, path)


def bootstrap_market(cfg: IngestConfig, fetch: Fetcher = http_get, run_id: Optional[str] = None) -> int:
    """Bulk load the trailing market history if market_data is empty. Returns rows inserted."""
    if count_rows(cfg.db_path, MARKET_TABLE) > 0:
        logger.debug("market_data already populated; skipping market bootstrap")
        return 0
    series = fetch_market_series(cfg.bootstrap_days, fetch)
    df = market_series_to_dataframe(series)
    if len(series.prices) != len(series.volumes):
        logger.warning(
            "market bootstrap: price/volume length mismatch (%d vs %d); pairing first %d",
            len(series.prices), len(series.volumes), len(df),
        )
    _snapshot(cfg, run_id or now_utc_run_id(), MARKET, df)
    n = insert_market_frame(cfg.db_path, df)
    if n == 0:
        logger.warning("market bootstrap: upstream returned no points")
    else:
        logger.info("Inserted historical market data: rows=%d", n)
    return n


def bootstrap_network(cfg: IngestConfig, fetch: Fetcher = http_get, run_id: Optional[str] = None) -> int:
    """Bulk load the trailing hash-rate/difficulty history if network_stats is empty."""
    if count_rows(cfg.db_path, NETWORK_TABLE) > 0:
        logger.debug("network_stats already populated; skipping network bootstrap")
        return 0
    hash_rate = fetch_network_series(cfg.bootstrap_timespan, HASH_RATE, fetch)
    difficulty = fetch_network_series(cfg.bootstrap_timespan, DIFFICULTY, fetch)
    df = network_series_to_dataframe(hash_rate, difficulty, align=cfg.network_align, tolerance=cfg.align_tolerance)
    _snapshot(cfg, run_id or now_utc_run_id(), NETWORK, df)
    n = insert_network_frame(cfg.db_path, df)
    if n == 0:
        logger.warning("network bootstrap: upstream returned no points")
    else:
        logger.info("Inserted historical network data: rows=%d", n)
    return n


def bootstrap(
    cfg: IngestConfig,
    fetch: Fetcher = http_get,
    sleep: Callable[[float], None] = time.sleep,
) -> BootstrapResult:
    """One-time backfill, run before the periodic feeds start.

    Feed failures are retried up to cfg.bootstrap_attempts times; the last one is raised.
    Storage failures are raised immediately.
    """
    ensure_tables(cfg.db_path)
    attempts = max(int(cfg.bootstrap_attempts), 1)
    run_id = now_utc_run_id()
    market_rows = 0
    attempt = 1
    while True:
        try:
            # a table loaded on an earlier attempt is non-empty now and gets skipped
            market_rows += bootstrap_market(cfg, fetch, run_id)
            network_rows = bootstrap_network(cfg, fetch, run_id)
            return BootstrapResult(market_rows=market_rows, network_rows=network_rows)
        except FeedError as e:
            if attempt >= attempts:
                raise
            logger.warning(
                "Bootstrap attempt %d/%d failed: %s; retrying in %.0fs",
                attempt, attempts, e, cfg.bootstrap_retry_delay,
            )
            sleep(cfg.bootstrap_retry_delay)
            attempt += 1


def market_tick(cfg: IngestConfig, fetch: Fetcher = http_get) -> MarketSample:
    series = fetch_market_series(cfg.latest_days, fetch)
    sample = latest_market_sample(series)
    insert_market_sample(cfg.db_path, sample)
    logger.info("Inserted latest market data: $%s", sample.price_usd)
    return sample


def network_tick(cfg: IngestConfig, fetch: Fetcher = http_get) -> NetworkSample:
    hash_rate = fetch_network_series(cfg.latest_timespan, HASH_RATE, fetch)
    difficulty = fetch_network_series(cfg.latest_timespan, DIFFICULTY, fetch)
    sample = latest_network_sample(hash_rate, difficulty)
    insert_network_sample(cfg.db_path, sample)
    logger.info(
        "Inserted latest network data: Hash Rate %s, Difficulty %s", sample.hash_rate, sample.difficulty
    )
    return sample


def block_tick(cfg: IngestConfig, fetch: Fetcher = http_get) -> Optional[BlockRecord]:
    """Upsert the chain tip if it is strictly taller than the stored latest height.

    The stored height is re-read every tick, never cached.
    """
    tip = fetch_latest_block_height(fetch)
    stored = latest_block_height(cfg.db_path)
    if tip <= stored:
        logger.debug("No new block. Current height: %d (stored %d)", tip, stored)
        return None
    block_hash, details = fetch_block_by_height(tip, fetch)
    record = block_record(tip, block_hash, details)
    upsert_block(cfg.db_path, record)
    logger.info("Inserted latest block data: Height %d", tip)
    return record


TICKS: Dict[str, Callable[[IngestConfig, Fetcher], object]] = {
    MARKET: market_tick,
    NETWORK: network_tick,
    BLOCK: block_tick,
}


def run_tick(feed: str, cfg: IngestConfig, fetch: Fetcher = http_get):
    """Run one tick of `feed`; feed and storage failures are logged and the tick is skipped."""
    tick = TICKS[feed]
    try:
        return tick(cfg, fetch)
    except TransportError as e:
        logger.warning("%s tick skipped: transport error: %s", feed, e)
    except DecodeError as e:
        logger.warning("%s tick skipped: decode error: %s", feed, e)
    except EmptySeriesError as e:
        logger.warning("%s tick skipped: %s", feed, e)
    except StorageError as e:
        logger.error("%s tick skipped: storage error: %s", feed, e)
    return None


def run_all_once(cfg: IngestConfig, fetch: Fetcher = http_get, feeds=FEEDS) -> Dict[str, object]:
    """Run a single tick of each feed in order (cron-style operation)."""
    return {feed: run_tick(feed, cfg, fetch) for feed in feeds}


def build_scheduler(
    cfg: IngestConfig,
    fetch: Fetcher = http_get,
    scheduler: Optional[BaseScheduler] = None,
) -> BaseScheduler:
    """Register one interval job per feed on `scheduler` (a BackgroundScheduler by default).

    Jobs fire immediately, then every interval. max_instances=1 with coalesce means a
    tick still running when the next fire is due causes that fire to be skipped, so a
    feed never overlaps itself; different feeds run concurrently on the executor pool.
    """
    if scheduler is None:
        scheduler = BackgroundScheduler(timezone="UTC")
    now = datetime.now(timezone.utc)
    for feed in FEEDS:
        scheduler.add_job(
            run_tick,
            trigger=IntervalTrigger(seconds=cfg.interval_for(feed), timezone="UTC"),
            args=[feed, cfg, fetch],
            id=f"{feed}_feed",
            name=f"{feed} feed tick",
            max_instances=1,
            coalesce=True,
            next_run_time=now,
            replace_existing=True,
        )
        logger.debug("Scheduled %s feed every %ds", feed, cfg.interval_for(feed))
    return scheduler
