"""
Shared fixtures: a temp DuckDB file and a fake fetcher standing in for the HTTP APIs.
"""
from __future__ import annotations

from pathlib import Path

import pytest

from chain_data_feed.bitcoin.db import ensure_tables
from fakes import FakeFetch


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "feed.duckdb"
    ensure_tables(path)
    return path


@pytest.fixture
def fake_fetch() -> FakeFetch:
    return FakeFetch()
