"""Bitcoin market, network and block feeds.

Implements source adapters, DuckDB management, the ingestion scheduler and the read API.
"""

__all__ = [
    "api",
    "db",
    "scheduler",
    "server",
]
