"""Domain models for contracts, oracle assessments and cycle state."""

from .models import (
    Assessment,
    Contract,
    CycleState,
    PerformanceSummary,
    Side,
    SizingDecision,
)

__all__ = [
    "Assessment",
    "Contract",
    "CycleState",
    "PerformanceSummary",
    "Side",
    "SizingDecision",
]
