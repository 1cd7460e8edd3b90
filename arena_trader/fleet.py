"""
Fleet assembly - one DecisionCycle per configured agent.

Each agent gets its own ledger, decision log, oracle and exchange. The
market data provider and the risk config are shared; the latter is
immutable, so sharing it by reference is safe.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .agents.decision import OpenAIOracle, Oracle
from .agents.execution import Exchange, PaperExchange
from .agents.market_data import BinanceFuturesMarketData, MarketDataProvider
from .agents.orchestrator import DecisionCycle
from .agents.scheduler import AgentScheduler
from .analytics.performance import PerformanceTracker
from .config import AgentSettings, TradingConfig
from .errors import ConfigurationError
from .ledger import PositionLedger
from .logger import DecisionLogger

logger = logging.getLogger("arena_trader.fleet")

OracleFactory = Callable[[AgentSettings], Oracle]
ExchangeFactory = Callable[[AgentSettings], Exchange]


def default_oracle(settings: AgentSettings) -> Oracle:
    return OpenAIOracle(
        api_key=settings.oracle_api_key,
        model=settings.oracle_model,
        base_url=settings.oracle_base_url,
        restricted=settings.restricted_account,
    )


def default_exchange(settings: AgentSettings) -> Exchange:
    if settings.exchange == "paper":
        return PaperExchange(
            initial_balance=settings.initial_balance,
            restricted=settings.restricted_account,
        )
    raise ConfigurationError(f"[{settings.agent_id}] no adapter for exchange '{settings.exchange}'")


@dataclass
class Fleet:
    config: TradingConfig
    cycles: List[DecisionCycle]
    scheduler: AgentScheduler
    market_data: MarketDataProvider
    unbuilt: Dict[str, str] = field(default_factory=dict)

    def get(self, agent_id: Optional[str] = None) -> Optional[DecisionCycle]:
        """Cycle for agent_id, or the first agent when no id is given."""
        if not agent_id:
            return self.cycles[0] if self.cycles else None
        return self.scheduler.cycles.get(agent_id)

    async def aclose(self):
        await self.scheduler.stop()
        await self.market_data.aclose()


def build_fleet(
    config: TradingConfig,
    market_data: Optional[MarketDataProvider] = None,
    oracle_factory: OracleFactory = default_oracle,
    exchange_factory: ExchangeFactory = default_exchange,
) -> Fleet:
    market_data = market_data or BinanceFuturesMarketData(
        base_url=config.market_data_url,
        cache_ttl_seconds=config.kline_cache_ttl_seconds,
    )

    cycles = []
    unbuilt = {}
    for settings in config.agents:
        try:
            exchange = exchange_factory(settings)
            oracle = oracle_factory(settings)
        except ConfigurationError as e:
            logger.error(f"[{settings.agent_id}] Not started: {e}")
            unbuilt[settings.agent_id] = str(e)
            continue

        ledger = PositionLedger(
            agent_id=settings.agent_id,
            universe=settings.symbols,
            store=DecisionLogger(config.log_dir, settings.agent_id),
            closed_window=config.performance_window,
        )
        cycles.append(DecisionCycle(
            settings=settings,
            risk_config=config.risk,
            ledger=ledger,
            oracle=oracle,
            exchange=exchange,
            market_data=market_data,
            tracker=PerformanceTracker(window_size=config.performance_window),
        ))

    logger.info(f"Fleet built: {len(cycles)} agents - {config.get_mode_description()}")
    return Fleet(
        config=config,
        cycles=cycles,
        scheduler=AgentScheduler(cycles),
        market_data=market_data,
        unbuilt=unbuilt,
    )
