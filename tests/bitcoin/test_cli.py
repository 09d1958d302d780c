from __future__ import annotations

from pathlib import Path

import chain_data_feed.bitcoin.cli as cli_mod
from chain_data_feed.bitcoin.cli import main, parse_args
from chain_data_feed.bitcoin.db import BLOCKS_TABLE, MARKET_TABLE, NETWORK_TABLE, count_rows
from fakes import FakeFetch, block_body, chart_body, market_body


def _fake_upstream() -> FakeFetch:
    return FakeFetch(
        {
            "market_chart": market_body([[1000, 100], [2000, 110], [3000, 120]], [[1000, 5], [2000, 6], [3000, 7]]),
            "charts/hash-rate": chart_body([(100, 1.0), (200, 2.0)]),
            "charts/difficulty": chart_body([(100, 10.0), (200, 20.0)]),
            "blocks/tip/height": b"42",
            "block-height/42": b"h42",
            "/block/h42": block_body(),
        }
    )


def test_parse_args_defaults(monkeypatch, tmp_path):
    for var in ("DUCKDB_PATH", "API_HOST", "API_PORT", "MARKET_INTERVAL", "NETWORK_INTERVAL", "BLOCK_INTERVAL", "PERSIST_DIR"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    cfg = parse_args(["serve"])
    assert cfg.command == "serve"
    assert cfg.port == 3001
    assert cfg.ingest.market_interval == 300
    assert cfg.ingest.network_interval == 3600
    assert cfg.ingest.block_interval == 10
    assert cfg.ingest.network_align == "index"
    assert cfg.ingest.persist_dir is None
    assert cfg.feeds == ("market", "network", "block")


def test_parse_args_env_overrides(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DUCKDB_PATH", str(tmp_path / "env.duckdb"))
    monkeypatch.setenv("BLOCK_INTERVAL", "30")
    cfg = parse_args(["tick", "--feed", "block", "--network-align", "timestamp"])
    assert cfg.ingest.db_path == tmp_path / "env.duckdb"
    assert cfg.ingest.block_interval == 30
    assert cfg.ingest.network_align == "timestamp"
    assert cfg.feeds == ("block",)


def test_bootstrap_tick_and_status(monkeypatch, tmp_path, capsys):
    fetch = _fake_upstream()
    monkeypatch.setattr(cli_mod, "http_get", fetch)
    db = tmp_path / "cli.duckdb"

    assert main(["bootstrap", "--duckdb", str(db)]) == 0
    assert count_rows(db, MARKET_TABLE) == 3
    assert count_rows(db, NETWORK_TABLE) == 2

    assert main(["tick", "--duckdb", str(db), "--feed", "block"]) == 0
    assert count_rows(db, BLOCKS_TABLE) == 1
    assert fetch.called("market_chart") == 1

    assert main(["status", "--duckdb", str(db)]) == 0
    out = capsys.readouterr().out
    assert "bootstrap market_rows=3 network_rows=2" in out
    assert "block=written" in out
    assert "market_data: rows=3" in out
    assert "blocks: rows=1" in out


def test_bootstrap_failure_exit_code(monkeypatch, tmp_path):
    monkeypatch.setattr(cli_mod, "http_get", FakeFetch({"market_chart": b"garbage"}))
    assert main(["bootstrap", "--duckdb", str(tmp_path / "x.duckdb")]) == 2


def test_tick_survives_failing_feed(monkeypatch, tmp_path, capsys):
    monkeypatch.setattr(cli_mod, "http_get", FakeFetch({"blocks/tip/height": b"not-a-number"}))
    db: Path = tmp_path / "t.duckdb"
    assert main(["tick", "--duckdb", str(db)]) == 0
    assert "market=none network=none block=none" in capsys.readouterr().out
