"""
Analytics components for arena agents.
"""
from .performance import (
    PROFIT_FACTOR_UNBOUNDED,
    PerformanceSnapshot,
    PerformanceTracker,
    SymbolStats,
)

__all__ = [
    "PROFIT_FACTOR_UNBOUNDED",
    "PerformanceSnapshot",
    "PerformanceTracker",
    "SymbolStats",
]
