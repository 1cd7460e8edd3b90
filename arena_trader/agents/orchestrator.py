"""
DecisionCycle - One agent's conductor.

Purpose: Run one cycle, call collaborators in order, and leave exactly one
DecisionRecord behind that matches what actually executed.

Phases (strict order):
  Idle -> Gathering -> AwaitingOracle -> Validating -> Executing -> Recording -> Idle

Any upstream failure ends the cycle early. Nothing is retried within the
same tick; the scheduler starts a fresh cycle on the next one.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..analytics.performance import PerformanceTracker
from ..config import AgentSettings, RiskConfig
from ..errors import ConfigurationError, ExchangeError, MarketDataError, OracleError, UpstreamError
from ..ledger import PositionLedger
from ..schemas import (
    AccountState,
    DecisionRecord,
    ExecutionResult,
    RuleRejection,
    TradeAction,
    ensure_utc,
    utcnow,
)
from .decision import DecisionContext, Oracle
from .execution import Exchange
from .market_data import MarketDataProvider
from .portfolio import reconcile
from .risk_gate import Approved, RiskValidator

logger = logging.getLogger("arena_trader.agents.orchestrator")


class CyclePhase(str, Enum):
    IDLE = "idle"
    GATHERING = "gathering"
    AWAITING_ORACLE = "awaiting_oracle"
    VALIDATING = "validating"
    EXECUTING = "executing"
    RECORDING = "recording"


@dataclass
class AgentStatus:
    """Observable health of one agent."""
    agent_id: str
    name: str
    phase: CyclePhase = CyclePhase.IDLE
    halted: bool = False
    halt_reason: Optional[str] = None
    cycles_run: int = 0
    successful_cycles: int = 0
    failed_cycles: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_cycle_number: int = 0
    last_cycle_at: Optional[datetime] = None

    def record_success(self, cycle_number: int, at: datetime):
        self.cycles_run += 1
        self.successful_cycles += 1
        self.consecutive_failures = 0
        self.last_cycle_number = cycle_number
        self.last_cycle_at = at

    def record_failure(self, error: str, cycle_number: Optional[int] = None, at: Optional[datetime] = None):
        self.cycles_run += 1
        self.failed_cycles += 1
        self.consecutive_failures += 1
        self.last_error = error
        if cycle_number is not None:
            self.last_cycle_number = cycle_number
        self.last_cycle_at = at or utcnow()

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "phase": self.phase.value,
            "halted": self.halted,
            "halt_reason": self.halt_reason,
            "cycles_run": self.cycles_run,
            "successful_cycles": self.successful_cycles,
            "failed_cycles": self.failed_cycles,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_cycle_number": self.last_cycle_number,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
        }


@dataclass
class CycleResult:
    """Outcome of one cycle, with the record the ledger stored."""
    cycle_number: int
    success: bool
    record: DecisionRecord
    executions: List[ExecutionResult] = field(default_factory=list)
    rejections: List[RuleRejection] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: float = 0.0


class DecisionCycle:
    """
    Runs the decision cycle for a single agent.

    The risk config is held by reference and read once per cycle, so a
    replacement takes effect on the next cycle and never mid-validation.
    """

    def __init__(
        self,
        settings: AgentSettings,
        risk_config: RiskConfig,
        ledger: PositionLedger,
        oracle: Oracle,
        exchange: Exchange,
        market_data: MarketDataProvider,
        validator: Optional[RiskValidator] = None,
        tracker: Optional[PerformanceTracker] = None,
    ):
        self.settings = settings
        self.ledger = ledger
        self.oracle = oracle
        self.exchange = exchange
        self.market_data = market_data
        self.validator = validator or RiskValidator()
        self.tracker = tracker or PerformanceTracker()
        self._risk_config = risk_config
        self.status = AgentStatus(agent_id=settings.agent_id, name=settings.name)
        self.last_account: Optional[AccountState] = None

    @property
    def agent_id(self) -> str:
        return self.settings.agent_id

    @property
    def risk_config(self) -> RiskConfig:
        return self._risk_config

    def replace_risk_config(self, risk_config: RiskConfig):
        risk_config.validate_limits()
        self._risk_config = risk_config
        logger.info(f"[{self.agent_id}] Risk config replaced")

    def check_ready(self):
        """Startup validation; a ConfigurationError halts this agent only."""
        try:
            self.settings.validate()
            self._risk_config.validate_limits()
        except ConfigurationError as e:
            self.status.halted = True
            self.status.halt_reason = str(e)
            logger.error(f"[{self.agent_id}] HALTED: {e}")
            raise

    def _set_phase(self, phase: CyclePhase):
        self.status.phase = phase

    @staticmethod
    async def _bounded(awaitable, timeout: float, error_cls, what: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError:
            raise error_cls(f"{what} timed out after {timeout}s", timed_out=True)

    async def run_once(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Run one complete cycle.

        Returns:
            CycleResult with the appended DecisionRecord
        """
        try:
            return await self._run_cycle(now)
        finally:
            self._set_phase(CyclePhase.IDLE)

    async def _run_cycle(self, now: Optional[datetime]) -> CycleResult:
        start_time = time.time()
        now = ensure_utc(now or utcnow())
        cycle_number = self.ledger.last_cycle_number + 1
        risk = self._risk_config
        settings = self.settings

        notes: List[str] = []
        rejections: List[RuleRejection] = []
        executions: List[ExecutionResult] = []
        actions: List[TradeAction] = []
        rationale = ""
        account: Optional[AccountState] = None
        error: Optional[str] = None

        logger.info(f"[{self.agent_id}] === CYCLE #{cycle_number} START ===")
        try:
            self._set_phase(CyclePhase.GATHERING)
            logger.info(f"[{self.agent_id}] [1/5] Gathering market and account data...")
            quotes = await self._bounded(
                self.market_data.get_quotes(settings.symbols),
                settings.market_data_timeout_seconds, MarketDataError, "market data",
            )
            account = await self._bounded(
                self.exchange.get_account({s: q.price for s, q in quotes.items()}),
                settings.exchange_timeout_seconds, ExchangeError, "account query",
            )
            self.last_account = account
            open_positions = self.ledger.open_positions()
            notes.extend(reconcile(open_positions, account, self.agent_id).notes())
            performance = self.tracker.summarize(self.ledger.recent_closed_trades(self.tracker.window_size))

            self._set_phase(CyclePhase.AWAITING_ORACLE)
            logger.info(f"[{self.agent_id}] [2/5] Requesting oracle decision...")
            context = DecisionContext(
                agent_id=self.agent_id,
                cycle_number=cycle_number,
                timestamp=now,
                account=account,
                open_positions=open_positions,
                quotes=quotes,
                performance=performance,
                risk_config=risk,
                symbols=list(settings.symbols),
            )
            decision = await self._bounded(
                self.oracle.request_decision(context),
                settings.oracle_timeout_seconds, OracleError, "oracle",
            )
            rationale = decision.rationale
            notes.extend(f"parse: {e}" for e in decision.parse_errors)
            untracked = [a for a in decision.actions if a.symbol not in settings.symbols]
            if untracked:
                notes.extend(f"ignored {a.action.value} {a.symbol}: symbol not tracked" for a in untracked)
                decision = decision.model_copy(update={
                    "actions": [a for a in decision.actions if a.symbol in settings.symbols],
                })

            self._set_phase(CyclePhase.VALIDATING)
            logger.info(f"[{self.agent_id}] [3/5] Validating {len(decision.actions)} candidate actions...")
            batch = self.validator.validate_batch(decision, account, open_positions, risk, quotes, now)
            rejections = batch.rejections
            notes.extend(batch.notes)

            self._set_phase(CyclePhase.EXECUTING)
            logger.info(f"[{self.agent_id}] [4/5] Executing {len(batch.approved)} approved actions...")
            for approved in batch.approved:
                try:
                    result = await self._bounded(
                        self.exchange.execute(approved),
                        settings.exchange_timeout_seconds, ExchangeError,
                        f"{approved.action.action.value} {approved.action.symbol}",
                    )
                except UpstreamError as e:
                    error = f"{e.source}: {e}"
                    logger.error(f"[{self.agent_id}] Execution stopped: {error}")
                    break
                executions.append(result)
                actions.append(self._to_trade_action(approved, result, cycle_number))

        except UpstreamError as e:
            error = f"{e.source}: {e}"
            logger.error(f"[{self.agent_id}] Cycle #{cycle_number} aborted in {self.status.phase.value}: {error}")

        self._set_phase(CyclePhase.RECORDING)
        logger.info(f"[{self.agent_id}] [5/5] Recording {len(actions)} executed actions...")
        record = self.ledger.append(
            cycle_number=cycle_number,
            timestamp=now,
            actions=actions,
            rationale=rationale,
            notes=notes,
            rejections=rejections,
            account=account.snapshot() if account else None,
            success=error is None,
            error=error,
        )

        if error is None:
            self.status.record_success(cycle_number, now)
        else:
            self.status.record_failure(error, cycle_number, now)

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"[{self.agent_id}] === CYCLE #{cycle_number} END === "
            f"{len(executions)} filled, {len(rejections)} rejected ({duration_ms:.0f}ms)"
        )
        return CycleResult(
            cycle_number=cycle_number,
            success=error is None,
            record=record,
            executions=executions,
            rejections=rejections,
            error=error,
            duration_ms=duration_ms,
        )

    @staticmethod
    def _to_trade_action(approved: Approved, result: ExecutionResult, cycle_number: int) -> TradeAction:
        return TradeAction(
            symbol=result.symbol,
            action=result.action.value,
            price=result.fill_price,
            quantity=result.fill_quantity,
            leverage=result.leverage,
            timestamp=result.timestamp,
            cycle_number=cycle_number,
            confidence=approved.action.confidence,
            order_id=result.order_id,
        )
