from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd


@dataclass(frozen=True)
class PersistConfig:
    root_dir: Path
    dataset_slug: str = "bitcoin"

    def dataset_dir(self) -> Path:
        d = self.root_dir / self.dataset_slug
        d.mkdir(parents=True, exist_ok=True)
        return d


def now_utc_run_id() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%SZ")


def write_raw_snapshot(cfg: PersistConfig, run_id: str, feed: str, df: pd.DataFrame) -> Path:
    """Write a bootstrap pull as {run_id}_{feed}_bootstrap.csv under the dataset dir."""
    out = cfg.dataset_dir() / f"{run_id}_{feed}_bootstrap.csv"
    # timestamp first, remaining columns in frame order
    cols = ["timestamp"] + [c for c in df.columns if c != "timestamp"]
    df.loc[:, cols].to_csv(out, index=False)
    return out
