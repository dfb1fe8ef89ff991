"""Services supporting the execution engine."""

from .costs import (
    CostAccountant,
    CostRecord,
    CostSink,
    CostSummary,
    InMemoryCostSink,
    calculate_cost,
    daily_costs,
    summarize_costs,
)

__all__ = [
    "CostAccountant",
    "CostRecord",
    "CostSink",
    "CostSummary",
    "InMemoryCostSink",
    "calculate_cost",
    "daily_costs",
    "summarize_costs",
]
