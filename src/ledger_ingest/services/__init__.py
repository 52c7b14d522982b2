"""Services: import orchestration and the ledger context."""

from .importer import CancellationToken, ImportOrchestrator, ImportProgress, ImportStage
from .ledger import Ledger

__all__ = [
    "CancellationToken",
    "ImportOrchestrator",
    "ImportProgress",
    "ImportStage",
    "Ledger",
]
