from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .api import FeedError, http_get
from .db import TABLES, StorageError, coverage_stats, ensure_tables
from .scheduler import FEEDS, IngestConfig, bootstrap, build_scheduler, run_all_once


logger = logging.getLogger(__name__)

DEFAULT_DUCKDB = "data/chain_data_feed.duckdb"
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001
COMMANDS = ("serve", "ingest", "api", "bootstrap", "tick", "status")


@dataclass
class RunConfig:
    command: str
    ingest: IngestConfig
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    feeds: tuple = FEEDS
    debug: bool = False


def setup_logging(debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # apscheduler logs every job submission at INFO
    logging.getLogger("apscheduler").setLevel(logging.DEBUG if debug else logging.WARNING)


def _serve_api(cfg: RunConfig) -> None:
    import uvicorn

    from .server import create_app

    uvicorn.run(create_app(cfg.ingest.db_path), host=cfg.host, port=cfg.port, log_level="debug" if cfg.debug else "info")


def _print_bootstrap(cfg: RunConfig) -> None:
    res = bootstrap(cfg.ingest, http_get)
    print(f"bootstrap market_rows={res.market_rows} network_rows={res.network_rows} db={cfg.ingest.db_path}")


def run_command(cfg: RunConfig) -> int:
    if cfg.command == "bootstrap":
        _print_bootstrap(cfg)
        return 0

    if cfg.command == "tick":
        ensure_tables(cfg.ingest.db_path)
        results = run_all_once(cfg.ingest, http_get, cfg.feeds)
        print(" ".join(f"{feed}={'written' if res is not None else 'none'}" for feed, res in results.items()))
        return 0

    if cfg.command == "status":
        ensure_tables(cfg.ingest.db_path)
        for table in TABLES:
            cov = coverage_stats(cfg.ingest.db_path, table)
            if cov is None:
                print(f"{table}: empty")
            else:
                tmin, tmax, cnt = cov
                print(f"{table}: rows={cnt} range=[{tmin}..{tmax}]")
        return 0

    if cfg.command == "api":
        ensure_tables(cfg.ingest.db_path)
        _serve_api(cfg)
        return 0

    if cfg.command == "ingest":
        from apscheduler.schedulers.blocking import BlockingScheduler

        _print_bootstrap(cfg)
        sched = build_scheduler(cfg.ingest, http_get, BlockingScheduler(timezone="UTC"))
        try:
            sched.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Ingestion stopped")
        return 0

    if cfg.command == "serve":
        _print_bootstrap(cfg)
        sched = build_scheduler(cfg.ingest, http_get)
        sched.start()
        try:
            _serve_api(cfg)
        finally:
            sched.shutdown(wait=False)
        return 0

    raise ValueError(f"unknown command: {cfg.command}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


def parse_args(argv: Optional[list[str]] = None) -> RunConfig:
    load_dotenv()
    p = argparse.ArgumentParser(description="Bitcoin market/network/block ingestion feed and read API")
    p.add_argument("command", choices=COMMANDS, help="What to run")
    p.add_argument(
        "--duckdb",
        type=Path,
        default=Path(os.getenv("DUCKDB_PATH", DEFAULT_DUCKDB)),
        help="Path to DuckDB file (env DUCKDB_PATH)",
    )
    p.add_argument("--host", default=os.getenv("API_HOST", DEFAULT_HOST), help="API bind host (env API_HOST)")
    p.add_argument("--port", type=int, default=_env_int("API_PORT", DEFAULT_PORT), help="API port (env API_PORT)")
    p.add_argument("--feed", choices=FEEDS, action="append", help="Limit 'tick' to these feeds (repeatable)")
    p.add_argument("--market-interval", type=int, default=_env_int("MARKET_INTERVAL", 300), help="Seconds between market ticks")
    p.add_argument("--network-interval", type=int, default=_env_int("NETWORK_INTERVAL", 3600), help="Seconds between network ticks")
    p.add_argument("--block-interval", type=int, default=_env_int("BLOCK_INTERVAL", 10), help="Seconds between block ticks")
    p.add_argument(
        "--network-align",
        choices=("index", "timestamp"),
        default="index",
        help="Pair hash-rate/difficulty bootstrap points by array index or nearest timestamp",
    )
    p.add_argument("--align-tolerance", type=int, default=3600, help="Max seconds between paired points for --network-align timestamp")
    p.add_argument(
        "--persist-dir",
        type=Path,
        default=Path(os.environ["PERSIST_DIR"]) if os.getenv("PERSIST_DIR") else None,
        help="Directory for raw bootstrap CSV snapshots (env PERSIST_DIR)",
    )
    p.add_argument("--bootstrap-attempts", type=int, default=1, help="Bootstrap tries before giving up")
    p.add_argument("--bootstrap-retry-delay", type=float, default=30.0, help="Seconds between bootstrap tries")
    p.add_argument("--debug", action="store_true", help="Verbose logging")
    args = p.parse_args(argv)

    ingest = IngestConfig(
        db_path=args.duckdb,
        market_interval=args.market_interval,
        network_interval=args.network_interval,
        block_interval=args.block_interval,
        network_align=args.network_align,
        align_tolerance=args.align_tolerance,
        persist_dir=args.persist_dir,
        bootstrap_attempts=args.bootstrap_attempts,
        bootstrap_retry_delay=args.bootstrap_retry_delay,
    )
    return RunConfig(
        command=args.command,
        ingest=ingest,
        host=args.host,
        port=args.port,
        feeds=tuple(args.feed) if args.feed else FEEDS,
        debug=args.debug,
    )


def main(argv: Optional[list[str]] = None) -> int:
    cfg = parse_args(argv)
    setup_logging(cfg.debug)
    try:
        return run_command(cfg)
    except (FeedError, StorageError) as e:
        logger.error("%s failed: %s", cfg.command, e)
        if cfg.debug:
            raise
        return 2
    except Exception as e:  # surface clear error message
        print(f"[ERROR] {e}", file=sys.stderr)
        if cfg.debug:
            raise
        return 3


if __name__ == "__main__":
    raise SystemExit(main())
