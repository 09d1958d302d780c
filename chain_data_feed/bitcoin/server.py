"""
Read-only HTTP API over the stored feeds.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .db import StorageError, read_latest_block, read_market_data, read_network_data

logger = logging.getLogger(__name__)


class MarketDataResponse(BaseModel):
    timestamp: str
    price_usd: float
    volume_usd: float


class NetworkDataResponse(BaseModel):
    timestamp: str
    hash_rate: float
    difficulty: float


class LatestBlockResponse(BaseModel):
    block_hash: str
    height: int
    timestamp: str
    tx_count: int
    size: int
    weight: int


def _storage_error(e: StorageError) -> JSONResponse:
    logger.error("Database query error: %s", e)
    return JSONResponse(status_code=500, content={"error": f"Database query error: {e}"})


def create_app(db_path: Path) -> FastAPI:
    """Build the API bound to the DuckDB file at db_path."""
    app = FastAPI(
        title="Chain Data Feed API",
        description="Bitcoin market, network and block history",
        version="0.1.0",
    )
    app.state.db_path = Path(db_path)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["content-type"],
    )

    @app.get("/market-data", response_model=List[MarketDataResponse])
    def get_market_data():
        try:
            return read_market_data(app.state.db_path)
        except StorageError as e:
            return _storage_error(e)

    @app.get("/network-data", response_model=List[NetworkDataResponse])
    def get_network_data():
        try:
            return read_network_data(app.state.db_path)
        except StorageError as e:
            return _storage_error(e)

    @app.get("/latest-block", response_model=LatestBlockResponse)
    def get_latest_block():
        try:
            block = read_latest_block(app.state.db_path)
        except StorageError as e:
            return _storage_error(e)
        if block is None:
            logger.warning("No data found in blocks table.")
            return JSONResponse(status_code=404, content={"error": "No data found in blocks table."})
        return block

    return app
