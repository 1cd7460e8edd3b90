"""
Decision cycle components for arena agents.

Handoffs (strict order):
  MarketDataProvider -> Exchange (account) -> Oracle -> RiskValidator -> Exchange (orders) -> PositionLedger
"""
from .decision import DecisionContext, OpenAIOracle, Oracle
from .execution import Exchange, PaperExchange
from .market_data import BinanceFuturesMarketData, MarketDataProvider
from .orchestrator import AgentStatus, CycleResult, CyclePhase, DecisionCycle
from .risk_gate import Approved, BatchValidation, Rejected, RiskValidator
from .scheduler import AgentScheduler

__all__ = [
    "AgentScheduler",
    "AgentStatus",
    "Approved",
    "BatchValidation",
    "BinanceFuturesMarketData",
    "CycleResult",
    "CyclePhase",
    "DecisionContext",
    "DecisionCycle",
    "Exchange",
    "MarketDataProvider",
    "OpenAIOracle",
    "Oracle",
    "PaperExchange",
    "Rejected",
    "RiskValidator",
]
