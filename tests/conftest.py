"""
Root conftest.py for pytest configuration.

Makes the arena_trader package importable and provides shared builders for
actions, accounts and stub collaborators.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

root_dir = Path(__file__).parent.parent
if str(root_dir) not in sys.path:
    sys.path.insert(0, str(root_dir))

import pytest
from typing import Dict, List, Optional

from arena_trader.agents.decision import Oracle
from arena_trader.agents.execution import PaperExchange
from arena_trader.agents.market_data import MarketDataProvider
from arena_trader.agents.orchestrator import DecisionCycle
from arena_trader.config import AgentSettings, RiskConfig
from arena_trader.errors import MarketDataError
from arena_trader.ledger import PositionLedger
from arena_trader.schemas import (
    CandidateDecision,
    ClosedTrade,
    Kline,
    MarketQuote,
    TradeAction,
)

pytest_plugins = ('pytest_asyncio',)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
BIG_OI = 1_000_000_000.0


def make_action(
    symbol: str,
    action: str,
    price: float,
    quantity: float,
    leverage: int = 1,
    timestamp: Optional[datetime] = T0,
    confidence: int = 70,
) -> TradeAction:
    return TradeAction(
        symbol=symbol,
        action=action,
        price=price,
        quantity=quantity,
        leverage=leverage,
        timestamp=timestamp,
        confidence=confidence,
    )


def make_closed_trade(pnl: float, symbol: str = "BTCUSDT", pnl_pct: Optional[float] = None,
                      duration_seconds: float = 3600.0) -> ClosedTrade:
    return ClosedTrade(
        symbol=symbol,
        side="long",
        entry_price=100.0,
        exit_price=100.0 + pnl,
        quantity=1.0,
        leverage=1,
        entry_time=T0,
        exit_time=T0 + timedelta(seconds=duration_seconds),
        pnl=pnl,
        pnl_pct=pnl_pct if pnl_pct is not None else pnl,
        margin_used=100.0,
        duration_seconds=duration_seconds,
    )


class StaticMarketData(MarketDataProvider):
    """Serves fixed quotes; symbols without a quote raise MarketDataError."""

    def __init__(self, quotes: Dict[str, MarketQuote], klines: Optional[List[Kline]] = None):
        self.quotes = dict(quotes)
        self.klines = klines or []

    def set_price(self, symbol: str, price: float, open_interest_usd: Optional[float] = BIG_OI):
        self.quotes[symbol] = MarketQuote(symbol=symbol, price=price, open_interest_usd=open_interest_usd)

    async def get_quote(self, symbol: str) -> MarketQuote:
        if symbol not in self.quotes:
            raise MarketDataError(f"no quote for {symbol}")
        return self.quotes[symbol]

    async def get_klines(self, symbol: str, interval: str = "3m", limit: int = 100) -> List[Kline]:
        return self.klines[:limit]


class ScriptedOracle(Oracle):
    """Returns queued decisions in order, then empty ones."""

    def __init__(self, *decisions: CandidateDecision):
        self.decisions = list(decisions)
        self.contexts = []

    async def request_decision(self, context) -> CandidateDecision:
        self.contexts.append(context)
        if self.decisions:
            return self.decisions.pop(0)
        return CandidateDecision(rationale="nothing to do")


def make_cycle(agent_id, market_data, oracle, exchange=None, risk_config=None, **settings) -> DecisionCycle:
    settings.setdefault("oracle_api_key", "sk-test")
    settings.setdefault("symbols", ["BTCUSDT", "SOLUSDT"])
    settings.setdefault("scan_interval_seconds", 3600)
    agent = AgentSettings(agent_id=agent_id, **settings)
    return DecisionCycle(
        settings=agent,
        risk_config=risk_config or RiskConfig(),
        ledger=PositionLedger(agent_id, universe=agent.symbols),
        oracle=oracle,
        exchange=exchange or PaperExchange(initial_balance=agent.initial_balance),
        market_data=market_data,
    )


@pytest.fixture
def market_data():
    return StaticMarketData({
        "BTCUSDT": MarketQuote(symbol="BTCUSDT", price=60000.0, open_interest_usd=BIG_OI),
        "SOLUSDT": MarketQuote(symbol="SOLUSDT", price=100.0, open_interest_usd=20_000_000.0),
    })
