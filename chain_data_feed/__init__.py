"""Chain Data Feed - Bitcoin telemetry ingestion and read API.

Provides:
- Market (price/volume), network (hash rate/difficulty) and block feeds
- Periodic ingestion scheduler with one-time bootstrap backfill
- DuckDB persistence layer and a read-only HTTP API
- CLI scripts for exporting stored tables
"""

__version__ = "0.1.0"

# Expose main submodules
from . import bitcoin
from . import scripts

__all__ = ["bitcoin", "scripts", "__version__"]
