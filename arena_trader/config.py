"""
Configuration management with safety latches for trading modes.

Risk rules live in an immutable RiskConfig shared by reference across
agents; reconfiguration swaps the reference instead of mutating it.
"""
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .errors import ConfigurationError


class TradingMode(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class RiskRule(str, Enum):
    """Risk rules in priority order - first violation wins."""
    ANTI_STACKING = "anti_stacking"
    LEVERAGE = "leverage"
    POSITION_SIZE = "position_size"
    RISK_REWARD = "risk_reward"
    MARGIN_USAGE = "margin_usage"
    LIQUIDITY = "liquidity"


class RulePolicy(str, Enum):
    REJECT = "reject"
    CLAMP = "clamp"


CLAMPABLE_RULES = frozenset({RiskRule.LEVERAGE, RiskRule.POSITION_SIZE, RiskRule.MARGIN_USAGE})

MIN_LEVERAGE_FLOOR = 1


def _default_policies() -> Dict[RiskRule, RulePolicy]:
    return {
        RiskRule.ANTI_STACKING: RulePolicy.REJECT,
        RiskRule.LEVERAGE: RulePolicy.CLAMP,
        RiskRule.POSITION_SIZE: RulePolicy.REJECT,
        RiskRule.RISK_REWARD: RulePolicy.REJECT,
        RiskRule.MARGIN_USAGE: RulePolicy.REJECT,
        RiskRule.LIQUIDITY: RulePolicy.REJECT,
    }


class RiskConfig(BaseModel):
    """Hard risk limits enforced by the RiskValidator."""
    model_config = ConfigDict(frozen=True)

    major_symbols: Tuple[str, ...] = ("BTCUSDT", "ETHUSDT")
    major_max_leverage: int = 50
    altcoin_max_leverage: int = 20
    restricted_max_leverage: int = 5

    major_position_range: Tuple[float, float] = Field(
        default=(5.0, 10.0),
        description="Allowed notional as a multiple of equity for major pairs",
    )
    altcoin_position_range: Tuple[float, float] = Field(
        default=(0.8, 1.5),
        description="Allowed notional as a multiple of equity for all other symbols",
    )

    min_risk_reward: float = 3.0
    max_margin_usage: float = 0.90
    min_open_interest_usd: float = 15_000_000.0

    policies: Mapping[RiskRule, RulePolicy] = Field(default_factory=_default_policies, validate_default=True)

    @field_validator("policies")
    @classmethod
    def _freeze_policies(cls, value: Mapping[RiskRule, RulePolicy]) -> Mapping[RiskRule, RulePolicy]:
        # read-only view, the config is shared across agents
        return MappingProxyType(dict(value))

    @field_serializer("policies")
    def _dump_policies(self, value: Mapping[RiskRule, RulePolicy]) -> Dict[RiskRule, RulePolicy]:
        return dict(value)

    def is_major(self, symbol: str) -> bool:
        return symbol.upper() in self.major_symbols

    def max_leverage_for(self, symbol: str, restricted: bool = False) -> int:
        """Asset-class ceiling, capped by the sub-account ceiling when restricted."""
        ceiling = self.major_max_leverage if self.is_major(symbol) else self.altcoin_max_leverage
        if restricted:
            ceiling = min(ceiling, self.restricted_max_leverage)
        return ceiling

    def position_range_for(self, symbol: str) -> Tuple[float, float]:
        return self.major_position_range if self.is_major(symbol) else self.altcoin_position_range

    def policy_for(self, rule: RiskRule) -> RulePolicy:
        return self.policies.get(rule, RulePolicy.REJECT)

    def replace(self, **changes) -> "RiskConfig":
        """Return a new config; the current one is never mutated."""
        return RiskConfig(**{**self.model_dump(), **changes})

    def validate_limits(self):
        """Raise ConfigurationError when limits are outside sane bounds."""
        ceilings = {
            "major_max_leverage": self.major_max_leverage,
            "altcoin_max_leverage": self.altcoin_max_leverage,
            "restricted_max_leverage": self.restricted_max_leverage,
        }
        for name, value in ceilings.items():
            if value < MIN_LEVERAGE_FLOOR:
                raise ConfigurationError(
                    f"{name}={value} is below the minimum leverage of {MIN_LEVERAGE_FLOOR}"
                )

        for name, (low, high) in (
            ("major_position_range", self.major_position_range),
            ("altcoin_position_range", self.altcoin_position_range),
        ):
            if low <= 0 or high < low:
                raise ConfigurationError(f"{name}=({low}, {high}) must satisfy 0 < min <= max")

        if self.min_risk_reward <= 0:
            raise ConfigurationError(f"min_risk_reward={self.min_risk_reward} must be positive")
        if not 0 < self.max_margin_usage <= 1:
            raise ConfigurationError(f"max_margin_usage={self.max_margin_usage} must be in (0, 1]")
        if self.min_open_interest_usd < 0:
            raise ConfigurationError("min_open_interest_usd cannot be negative")

        for rule, policy in self.policies.items():
            if policy == RulePolicy.CLAMP and rule not in CLAMPABLE_RULES:
                raise ConfigurationError(f"Rule {rule.value} cannot use the clamp policy")


@dataclass
class AgentSettings:
    """One competing agent: its account, oracle and exchange."""
    agent_id: str
    name: str = ""
    exchange: str = "paper"
    exchange_api_key: str = ""
    exchange_secret_key: str = ""
    oracle_model: str = "gpt-4o-mini"
    oracle_api_key: str = ""
    oracle_base_url: Optional[str] = None
    initial_balance: float = 1000.0
    symbols: List[str] = field(default_factory=lambda: ["BTCUSDT", "ETHUSDT", "SOLUSDT"])
    scan_interval_seconds: int = 180
    restricted_account: bool = False
    oracle_timeout_seconds: float = 120.0
    exchange_timeout_seconds: float = 30.0
    market_data_timeout_seconds: float = 15.0

    def __post_init__(self):
        if not self.name:
            self.name = self.agent_id
        self.symbols = [s.strip().upper() for s in self.symbols if s and s.strip()]

    def validate(self):
        """Startup checks; a failure halts only this agent."""
        if not self.agent_id:
            raise ConfigurationError("agent_id is required")
        if self.exchange != "paper" and not (self.exchange_api_key and self.exchange_secret_key):
            raise ConfigurationError(
                f"[{self.agent_id}] exchange '{self.exchange}' requires API key and secret"
            )
        if not self.oracle_api_key:
            raise ConfigurationError(f"[{self.agent_id}] oracle API key is not set")
        if not self.symbols:
            raise ConfigurationError(f"[{self.agent_id}] symbol universe is empty")
        if self.scan_interval_seconds <= 0:
            raise ConfigurationError(f"[{self.agent_id}] scan interval must be positive")
        if self.initial_balance <= 0:
            raise ConfigurationError(f"[{self.agent_id}] initial balance must be positive")


@dataclass
class TradingConfig:
    agents: List[AgentSettings] = field(default_factory=list)
    risk: RiskConfig = field(default_factory=RiskConfig)

    trading_mode: TradingMode = TradingMode.PAPER
    live_trading_enabled: bool = False

    log_dir: str = "arena_trader/logs"
    api_port: int = 8080
    market_data_url: str = "https://fapi.binance.com"
    kline_cache_ttl_seconds: float = 30.0
    performance_window: int = 100

    def __post_init__(self):
        self._validate_safety()

    def _validate_safety(self):
        """Ensure safety latches are properly configured."""
        if self.trading_mode == TradingMode.LIVE and not self.live_trading_enabled:
            raise ConfigurationError(
                "SAFETY: Live trading requested but LIVE_TRADING_ENABLED is not true. "
                "Both TRADING_MODE=live AND LIVE_TRADING_ENABLED=true are required."
            )
        if self.trading_mode == TradingMode.PAPER:
            for agent in self.agents:
                if agent.exchange != "paper":
                    raise ConfigurationError(
                        f"SAFETY: agent {agent.agent_id} uses exchange '{agent.exchange}' in paper mode"
                    )

    def get_agent(self, agent_id: str) -> Optional[AgentSettings]:
        return next((a for a in self.agents if a.agent_id == agent_id), None)

    def get_mode_description(self) -> str:
        if self.trading_mode == TradingMode.PAPER:
            return "PAPER: Orders filled by the simulated exchange"
        return "LIVE: Real money trading ENABLED"


def _env_bool(key: str, default: str = "false") -> bool:
    return os.getenv(key, default).lower() == "true"


def _parse_risk(raw: dict) -> RiskConfig:
    data = dict(raw)
    if "policies" in data:
        data["policies"] = {RiskRule(k): RulePolicy(v) for k, v in data["policies"].items()}
    return RiskConfig(**data)


def _agent_from_env() -> AgentSettings:
    symbols_str = os.getenv("AGENT_SYMBOLS", "BTCUSDT,ETHUSDT,SOLUSDT")
    return AgentSettings(
        agent_id=os.getenv("AGENT_ID", "paper_trader"),
        name=os.getenv("AGENT_NAME", ""),
        exchange=os.getenv("AGENT_EXCHANGE", "paper"),
        exchange_api_key=os.getenv("EXCHANGE_API_KEY", ""),
        exchange_secret_key=os.getenv("EXCHANGE_SECRET_KEY", ""),
        oracle_model=os.getenv("ORACLE_MODEL", "gpt-4o-mini"),
        oracle_api_key=os.getenv("OPENAI_API_KEY", ""),
        initial_balance=float(os.getenv("AGENT_INITIAL_BALANCE", "1000")),
        symbols=symbols_str.split(","),
        scan_interval_seconds=int(os.getenv("SCAN_INTERVAL_SECONDS", "180")),
        restricted_account=_env_bool("AGENT_RESTRICTED_ACCOUNT"),
    )


def _agents_from_file(path: str) -> Tuple[List[AgentSettings], Optional[RiskConfig]]:
    """Load agent definitions (and optionally risk limits) from a JSON file."""
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Could not read agents file {path}: {e}")

    agents = []
    for entry in raw.get("agents", []):
        entry = dict(entry)
        if not entry.get("oracle_api_key"):
            entry["oracle_api_key"] = os.getenv("OPENAI_API_KEY", "")
        try:
            agents.append(AgentSettings(**entry))
        except TypeError as e:
            raise ConfigurationError(f"Invalid agent entry {entry.get('agent_id')}: {e}")

    risk = _parse_risk(raw["risk"]) if "risk" in raw else None
    return agents, risk


def load_config() -> TradingConfig:
    """Load configuration from environment variables."""
    mode_str = os.getenv("TRADING_MODE", "paper").lower()
    try:
        trading_mode = TradingMode(mode_str)
    except ValueError:
        trading_mode = TradingMode.PAPER

    agents_file = os.getenv("AGENTS_FILE", "")
    risk = None
    if agents_file:
        agents, risk = _agents_from_file(agents_file)
    else:
        agents = [_agent_from_env()]

    return TradingConfig(
        agents=agents,
        risk=risk or RiskConfig(),
        trading_mode=trading_mode,
        live_trading_enabled=_env_bool("LIVE_TRADING_ENABLED"),
        log_dir=os.getenv("LOG_DIR", "arena_trader/logs"),
        api_port=int(os.getenv("API_PORT", "8080")),
        market_data_url=os.getenv("MARKET_DATA_URL", "https://fapi.binance.com"),
        kline_cache_ttl_seconds=float(os.getenv("KLINE_CACHE_TTL_SECONDS", "30")),
        performance_window=int(os.getenv("PERFORMANCE_WINDOW", "100")),
    )
