from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen
import json

import pandas as pd


COINGECKO_API = "https://api.coingecko.com/api/v3"
BLOCKCHAIN_INFO_API = "https://api.blockchain.info"
BLOCKSTREAM_API = "https://blockstream.info/api"

HASH_RATE = "hash-rate"
DIFFICULTY = "difficulty"

USER_AGENT = "chain-data-feed/1.0"
REQUEST_TIMEOUT = 15


class FeedError(Exception):
    """Base class for failures while pulling an upstream feed."""


class TransportError(FeedError):
    """Network failure, timeout or non-2xx response."""


class DecodeError(FeedError):
    """Payload could not be decoded into the expected shape."""


class EmptySeriesError(FeedError):
    """Upstream returned no points where at least one was expected."""


Fetcher = Callable[[str], bytes]


@dataclass(frozen=True)
class MarketSeries:
    prices: List[Tuple[int, float]]
    volumes: List[Tuple[int, float]]


@dataclass(frozen=True)
class ChartPoint:
    x: int
    y: float


@dataclass(frozen=True)
class ChartSeries:
    metric: str
    points: List[ChartPoint]


@dataclass(frozen=True)
class BlockDetails:
    timestamp: int
    tx_count: int
    size: int
    weight: int


@dataclass(frozen=True)
class MarketSample:
    timestamp: datetime
    price_usd: float
    volume_usd: float


@dataclass(frozen=True)
class NetworkSample:
    timestamp: datetime
    hash_rate: float
    difficulty: float


@dataclass(frozen=True)
class BlockRecord:
    block_hash: str
    height: int
    timestamp: datetime
    tx_count: int
    size: int
    weight: int


def http_get(url: str, timeout: float = REQUEST_TIMEOUT) -> bytes:
    """GET a URL and return the raw body.

    Any transport-level failure (including non-2xx statuses) is raised as TransportError.
    """
    req = Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except HTTPError as e:
        raise TransportError(f"HTTP {e.code} from {url}") from e
    except URLError as e:
        raise TransportError(f"request to {url} failed: {e.reason}") from e
    except OSError as e:
        raise TransportError(f"request to {url} failed: {e}") from e


def epoch_to_utc(seconds: int) -> datetime:
    """Epoch seconds -> UTC-naive datetime (storage convention)."""
    return pd.to_datetime(int(seconds), unit="s", utc=True).tz_convert(None).to_pydatetime()


def _decode_json(raw: bytes, url: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise DecodeError(f"malformed JSON from {url}: {e}") from e


def _decode_text(raw: bytes, url: str) -> str:
    try:
        return raw.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise DecodeError(f"non-text body from {url}") from e


def _decode_pairs(payload: Any, key: str, url: str) -> List[Tuple[int, float]]:
    try:
        rows = payload[key]
        return [(int(row[0]), float(row[1])) for row in rows]
    except (KeyError, IndexError, TypeError, ValueError) as e:
        raise DecodeError(f"bad '{key}' in payload from {url}: {e!r}") from e


def _build_market_chart_url(days: str) -> str:
    qs = urlencode({"vs_currency": "usd", "days": days})
    return f"{COINGECKO_API}/coins/bitcoin/market_chart?{qs}"


def _build_chart_url(metric: str, timespan: str) -> str:
    qs = urlencode({"timespan": timespan, "format": "json", "cors": "true"})
    return f"{BLOCKCHAIN_INFO_API}/charts/{metric}?{qs}"


def fetch_market_series(days: str, fetch: Fetcher = http_get) -> MarketSeries:
    """Fetch BTC/USD price and volume points for the trailing `days` window.

    Points are (epoch_ms, usd) pairs exactly as returned by the API.
    """
    url = _build_market_chart_url(days)
    payload = _decode_json(fetch(url), url)
    return MarketSeries(
        prices=_decode_pairs(payload, "prices", url),
        volumes=_decode_pairs(payload, "total_volumes", url),
    )


def fetch_network_series(timespan: str, metric: str, fetch: Fetcher = http_get) -> ChartSeries:
    """Fetch one blockchain.info chart (e.g. hash-rate, difficulty) as (epoch_s, value) points."""
    url = _build_chart_url(metric, timespan)
    payload = _decode_json(fetch(url), url)
    try:
        points = [ChartPoint(x=int(v["x"]), y=float(v["y"])) for v in payload["values"]]
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"bad 'values' in payload from {url}: {e!r}") from e
    return ChartSeries(metric=metric, points=points)


def fetch_latest_block_height(fetch: Fetcher = http_get) -> int:
    url = f"{BLOCKSTREAM_API}/blocks/tip/height"
    text = _decode_text(fetch(url), url)
    try:
        return int(text)
    except ValueError as e:
        raise DecodeError(f"tip height is not an integer: {text[:64]!r}") from e


def _coalesce_int(details: dict, key: str) -> int:
    value = details.get(key)
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def fetch_block_by_height(height: int, fetch: Fetcher = http_get) -> Tuple[str, BlockDetails]:
    """Resolve a height to its hash, then fetch the block details for that hash.

    Either call failing raises; nothing from the first call is returned on its own.
    Missing numeric fields in the details default to 0.
    """
    hash_url = f"{BLOCKSTREAM_API}/block-height/{height}"
    block_hash = _decode_text(fetch(hash_url), hash_url)
    if not block_hash:
        raise DecodeError(f"empty block hash for height {height}")

    details_url = f"{BLOCKSTREAM_API}/block/{block_hash}"
    payload = _decode_json(fetch(details_url), details_url)
    if not isinstance(payload, dict):
        raise DecodeError(f"block details from {details_url} is not an object")
    details = BlockDetails(
        timestamp=_coalesce_int(payload, "timestamp"),
        tx_count=_coalesce_int(payload, "tx_count"),
        size=_coalesce_int(payload, "size"),
        weight=_coalesce_int(payload, "weight"),
    )
    return block_hash, details


def block_record(height: int, block_hash: str, details: BlockDetails) -> BlockRecord:
    return BlockRecord(
        block_hash=block_hash,
        height=int(height),
        timestamp=epoch_to_utc(details.timestamp),
        tx_count=details.tx_count,
        size=details.size,
        weight=details.weight,
    )


def market_series_to_dataframe(series: MarketSeries) -> pd.DataFrame:
    """Pair price[i] with volume[i] into a canonical DataFrame: timestamp, price_usd, volume_usd.

    - pairing is by array position; the longer sequence is truncated
    - timestamp comes from the price point, milliseconds truncated to whole seconds
    - row order follows the API (no sorting, no dedup)
    """
    n = min(len(series.prices), len(series.volumes))
    if n == 0:
        return pd.DataFrame(columns=["timestamp", "price_usd", "volume_usd"]).astype(
            {"timestamp": "datetime64[ns]", "price_usd": float, "volume_usd": float}
        )
    df = pd.DataFrame(
        {
            "timestamp": pd.to_datetime([ms // 1000 for ms, _ in series.prices[:n]], unit="s"),
            "price_usd": [float(p) for _, p in series.prices[:n]],
            "volume_usd": [float(v) for _, v in series.volumes[:n]],
        }
    )
    return df


def _chart_to_dataframe(series: ChartSeries, column: str) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "timestamp": pd.to_datetime([p.x for p in series.points], unit="s"),
            column: [float(p.y) for p in series.points],
        }
    )


def network_series_to_dataframe(
    hash_rate: ChartSeries,
    difficulty: ChartSeries,
    align: str = "index",
    tolerance: int = 3600,
) -> pd.DataFrame:
    """Combine hash-rate and difficulty charts into: timestamp, hash_rate, difficulty.

    align="index" pairs points by array position (timestamp from the hash-rate point).
    align="timestamp" matches each hash-rate point to the nearest difficulty point
    within `tolerance` seconds; hash-rate points without a match are dropped.
    """
    cols = ["timestamp", "hash_rate", "difficulty"]
    if align == "index":
        n = min(len(hash_rate.points), len(difficulty.points))
        df = _chart_to_dataframe(ChartSeries(hash_rate.metric, hash_rate.points[:n]), "hash_rate")
        df["difficulty"] = [float(p.y) for p in difficulty.points[:n]]
        return df.astype({"timestamp": "datetime64[ns]", "hash_rate": float, "difficulty": float})
    if align != "timestamp":
        raise ValueError(f"unknown alignment mode: {align}")

    hr = _chart_to_dataframe(hash_rate, "hash_rate").sort_values("timestamp", kind="mergesort")
    diff = _chart_to_dataframe(difficulty, "difficulty").sort_values("timestamp", kind="mergesort")
    if hr.empty or diff.empty:
        return pd.DataFrame(columns=cols).astype(
            {"timestamp": "datetime64[ns]", "hash_rate": float, "difficulty": float}
        )
    merged = pd.merge_asof(
        hr.reset_index(drop=True),
        diff.reset_index(drop=True),
        on="timestamp",
        direction="nearest",
        tolerance=pd.Timedelta(seconds=tolerance),
    )
    merged = merged.dropna(subset=["difficulty"]).reset_index(drop=True)
    return merged.loc[:, cols]


def latest_market_sample(series: MarketSeries) -> MarketSample:
    """Last price point combined with the last volume point."""
    if not series.prices or not series.volumes:
        raise EmptySeriesError("No market data available")
    ts_ms, price = series.prices[-1]
    _, volume = series.volumes[-1]
    return MarketSample(timestamp=epoch_to_utc(ts_ms // 1000), price_usd=float(price), volume_usd=float(volume))


def latest_network_sample(hash_rate: ChartSeries, difficulty: ChartSeries) -> NetworkSample:
    """Last hash-rate point combined with the last difficulty point."""
    if not hash_rate.points or not difficulty.points:
        raise EmptySeriesError("No network data available")
    hr = hash_rate.points[-1]
    diff = difficulty.points[-1]
    return NetworkSample(timestamp=epoch_to_utc(hr.x), hash_rate=float(hr.y), difficulty=float(diff.y))
