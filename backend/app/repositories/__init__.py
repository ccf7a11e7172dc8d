"""Repository abstractions for database interactions."""

from .ledger_repository import LedgerRepository, expected_balance
from .pipeline_models import CycleLogInput, PositionInput
from .state_repository import CycleStateRepository
from .types import OrderRejected, PortfolioSnapshot, ReconciliationResult

__all__ = [
    "CycleLogInput",
    "CycleStateRepository",
    "LedgerRepository",
    "OrderRejected",
    "PortfolioSnapshot",
    "PositionInput",
    "ReconciliationResult",
    "expected_balance",
]
