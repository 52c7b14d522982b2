"""
Aggregation API Client.

Provides:
- Paginated transaction/account pages (GET /v1/transactions)
- Bounded retries on rate limiting and gateway errors

Auth failures are surfaced immediately; nothing is retried silently.
"""

from .client import AggregatorClient

__all__ = [
    "AggregatorClient",
]
