"""
Data source adapter interface and the source artifact wrapper.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..errors import SourceConfigError
from ..schemas.dedupe import compute_file_hash
from ..schemas.ledger import AccountMetadata, RawTransaction, SourceType

logger = logging.getLogger(__name__)


@dataclass
class Source:
    """
    A caller-supplied artifact: file bytes or a batch of API pages.

    Adapters only read from it.
    """

    file_name: str
    data: Optional[bytes] = None
    pages: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_path(cls, path: Path | str) -> "Source":
        path = Path(path)
        return cls(file_name=path.name, data=path.read_bytes())

    @classmethod
    def from_bytes(cls, data: bytes, file_name: str) -> "Source":
        return cls(file_name=file_name, data=data)

    @classmethod
    def from_api_pages(cls, pages: list[dict[str, Any]], name: str = "aggregator") -> "Source":
        return cls(file_name=name, pages=list(pages))

    @property
    def source_hash(self) -> str:
        """SHA256 of the artifact content (pages hashed as canonical JSON)."""
        if self.data is not None:
            return compute_file_hash(self.data)
        payload = json.dumps(self.pages, sort_keys=True, default=str).encode("utf-8")
        return compute_file_hash(payload)

    @property
    def is_empty(self) -> bool:
        return not self.data and not self.pages


class DataSource(ABC):
    """
    Base class for all source adapters.

    Each adapter wraps one parser behind the same extraction contract:
    - extract_accounts: account headers found in the artifact
    - extract_transactions: raw records of one account, in document order
    """

    # Parameter names this adapter accepts
    allowed_params: frozenset[str] = frozenset()

    @property
    @abstractmethod
    def source_type(self) -> SourceType:
        """Source type tag this adapter is registered under."""
        pass

    def validate_params(self, params: Optional[dict[str, Any]]) -> dict[str, Any]:
        """
        Check the opaque parameter bag and return a normalized copy.

        Raises:
            SourceConfigError: Unknown keys or invalid values
        """
        params = dict(params or {})
        unknown = sorted(set(params) - self.allowed_params)
        if unknown:
            raise SourceConfigError(
                f"Unknown parameter(s) for {self.source_type.value}: {', '.join(unknown)}"
            )
        return self._check_params(params)

    def _check_params(self, params: dict[str, Any]) -> dict[str, Any]:
        return params

    def require_bytes(self, source: Source) -> bytes:
        if source.data is None:
            raise SourceConfigError(
                f"{self.source_type.value} requires file bytes, got {source.file_name!r} without data"
            )
        return source.data

    @abstractmethod
    def extract_accounts(
        self, source: Source, params: Optional[dict[str, Any]] = None
    ) -> list[AccountMetadata]:
        """
        Extract account headers from the artifact.

        Raises:
            SourceAccessError: Artifact cannot be opened
            ParseError: Structure not recognized or zero rows
        """
        pass

    @abstractmethod
    def extract_transactions(
        self,
        account_identifier: str,
        source: Source,
        account_id: str,
        import_batch_id: str,
        params: Optional[dict[str, Any]] = None,
    ) -> list[RawTransaction]:
        """
        Extract the raw records of one account, in document order.

        Args:
            account_identifier: External id of the account inside the source
            source: Artifact to read
            account_id: Canonical account id stamped on each record
            import_batch_id: Batch id stamped on each record
            params: Adapter parameters

        Raises:
            SourceAccessError: Artifact cannot be opened
            ParseError: Structure not recognized or zero rows
            SourceConfigError: Unknown account identifier or bad params
        """
        pass

    def _unknown_account(self, account_identifier: str, known: list[str]) -> SourceConfigError:
        return SourceConfigError(
            f"Account {account_identifier!r} not found in {self.source_type.value} source "
            f"(found: {', '.join(known) or 'none'})"
        )
