"""
Closed source registry.

A fixed lookup table from source type tag to its adapter and fingerprint
strategy, built once at startup. There is no plugin discovery: adding a
source means adding a binding here.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from ..errors import UnsupportedSourceError
from ..schemas.dedupe import (
    BankSpreadsheetStrategy,
    CardStatementStrategy,
    DuplicateStrategy,
    LoanRepaymentStrategy,
    ProviderIdStrategy,
)
from ..schemas.ledger import AccountType, SourceType
from .aggregator import AggregatorApiSource
from .bank_spreadsheet import BankSpreadsheetSource
from .base import DataSource
from .card_statement import CardStatementSource
from .loan_statement import LoanStatementSource
from .traits import AccountTrait, trait_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceBinding:
    """Adapter, fingerprint strategy and default account type of one source type."""

    adapter: DataSource
    strategy: DuplicateStrategy
    default_account_type: Optional[AccountType] = None

    @property
    def source_type(self) -> SourceType:
        return self.adapter.source_type

    def trait_for(self, account_type: Optional[AccountType] = None) -> AccountTrait:
        resolved = account_type or self.default_account_type
        if resolved is None:
            raise UnsupportedSourceError(
                f"No account type known for {self.source_type.value} account"
            )
        return trait_for(resolved)


class SourceRegistry:
    """Lookup table from source type tag to binding."""

    def __init__(self, bindings: Iterable[SourceBinding]):
        self._bindings: dict[SourceType, SourceBinding] = {}
        for binding in bindings:
            if binding.source_type in self._bindings:
                raise ValueError(f"Duplicate binding for {binding.source_type.value}")
            self._bindings[binding.source_type] = binding

    def get(self, source_type: SourceType | str) -> SourceBinding:
        """
        Resolve a source type tag.

        Raises:
            UnsupportedSourceError: Unknown tag or tag without a binding
        """
        try:
            tag = SourceType(source_type)
        except ValueError as e:
            raise UnsupportedSourceError(f"Unknown source type: {source_type!r}") from e
        binding = self._bindings.get(tag)
        if binding is None:
            raise UnsupportedSourceError(f"No adapter registered for {tag.value}")
        return binding

    @property
    def source_types(self) -> list[SourceType]:
        return list(self._bindings)

    def __contains__(self, source_type: object) -> bool:
        try:
            return SourceType(source_type) in self._bindings
        except ValueError:
            return False


def default_registry() -> SourceRegistry:
    """Registry with every built-in adapter."""
    return SourceRegistry(
        [
            SourceBinding(LoanStatementSource(), LoanRepaymentStrategy(), AccountType.LOAN),
            SourceBinding(CardStatementSource(), CardStatementStrategy(), AccountType.CREDIT_CARD),
            SourceBinding(BankSpreadsheetSource(), BankSpreadsheetStrategy(), AccountType.CHECKING),
            SourceBinding(AggregatorApiSource(), ProviderIdStrategy()),
        ]
    )
