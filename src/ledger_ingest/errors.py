"""
Error taxonomy for ledger ingestion.

Propagation rules:
- Adapters and the duplicate detector raise, they never partially apply state.
- Only the import orchestrator commits; any error rolls the batch back.
- Duplicates are not errors: they are counted on the batch, never raised.
- Callers of ``Ledger.import_from`` receive an ``ImportResult`` carrying the
  typed error instead of a bare exception.
"""

from typing import Any, Optional


class LedgerIngestError(Exception):
    """Base exception for all ledger ingestion errors."""

    # Whether the operation may succeed when repeated unchanged
    retryable = False

    @property
    def code(self) -> str:
        """Stable machine-readable error name."""
        return type(self).__name__


class SourceAccessError(LedgerIngestError):
    """Source artifact cannot be opened (bad password, corrupt archive, bad credentials)."""

    pass


class ParseError(LedgerIngestError):
    """Source structure is not recognized or yields no rows (format drift)."""

    def __init__(
        self,
        message: str,
        source_type: Optional[str] = None,
        detail: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.source_type = source_type
        self.detail = detail or {}

        prefix = f"[{source_type}] " if source_type else ""
        super().__init__(f"{prefix}{message}")


class UnsupportedSourceError(LedgerIngestError):
    """No adapter is registered for the requested source type."""

    pass


class SourceConfigError(LedgerIngestError):
    """Adapter parameters are missing or invalid."""

    pass


class PersistenceError(LedgerIngestError):
    """Storage failure; the whole batch is rolled back."""

    pass


class AccountBusyError(PersistenceError):
    """Another import holds the account lock past the configured timeout."""

    retryable = True


class ImportCancelled(LedgerIngestError):
    """Import was cancelled cooperatively; the partial batch is discarded."""

    pass


class AggregatorError(LedgerIngestError):
    """Base exception for aggregation API errors."""

    pass


class AggregatorAPIError(AggregatorError):
    """Aggregation API returned a non-retryable error response."""

    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Aggregator API error {status_code}: {message}")


class AuthExpiredError(AggregatorError):
    """Access token rejected; the caller must re-authenticate. Never retried."""

    pass


class TransientNetworkError(AggregatorError):
    """Network failure that persisted through the bounded retry budget."""

    retryable = True


class RateLimitError(TransientNetworkError):
    """Aggregation API kept rate limiting after bounded backoff."""

    pass
