"""
Tests for DecisionCycle and AgentScheduler.

Uses the paper exchange with static market data and a scripted oracle, so
every cycle runs end to end without network access.
"""
import asyncio
from datetime import timedelta

import pytest

from arena_trader.agents.execution import PaperExchange
from arena_trader.agents.orchestrator import CyclePhase
from arena_trader.agents.scheduler import AgentScheduler
from arena_trader.config import RiskConfig
from arena_trader.errors import ConfigurationError, ExchangeError
from arena_trader.schemas import (
    CandidateAction,
    CandidateDecision,
    Direction,
    OpenPositionKey,
)

from conftest import T0, ScriptedOracle, make_cycle


def open_btc(size=6000.0, leverage=10):
    return CandidateAction(symbol="BTCUSDT", action="open_long", position_size_usd=size, leverage=leverage)


class SlowOracle(ScriptedOracle):
    async def request_decision(self, context):
        await asyncio.sleep(1)
        return await super().request_decision(context)


class CrashingOracle(ScriptedOracle):
    async def request_decision(self, context):
        raise RuntimeError("boom")


class FlakyExchange(PaperExchange):
    """Fails every fill on the given symbol."""

    def __init__(self, failing_symbol, **kwargs):
        super().__init__(**kwargs)
        self.failing_symbol = failing_symbol

    async def execute(self, approved):
        if approved.action.symbol == self.failing_symbol:
            raise ExchangeError(f"order rejected for {self.failing_symbol}")
        return await super().execute(approved)


class TestDecisionCycle:
    """Test one cycle end to end."""

    @pytest.mark.asyncio
    async def test_open_then_close_records_pnl(self, market_data):
        """Open BTC at 60000, close at 63000: +300 on 600 margin."""
        oracle = ScriptedOracle(
            CandidateDecision(actions=[open_btc()], rationale="breakout"),
            CandidateDecision(actions=[CandidateAction(symbol="BTCUSDT", action="close_long")]),
        )
        cycle = make_cycle("alpha", market_data, oracle)

        first = await cycle.run_once(now=T0)
        assert first.success
        assert first.cycle_number == 1
        assert first.record.rationale == "breakout"
        assert first.record.actions[0].quantity == pytest.approx(0.1)
        assert first.record.actions[0].order_id.startswith("paper-")
        assert OpenPositionKey("BTCUSDT", Direction.LONG) in cycle.ledger.open_positions()

        market_data.set_price("BTCUSDT", 63000.0)
        second = await cycle.run_once(now=T0 + timedelta(hours=2))

        close = second.record.actions[0]
        assert second.cycle_number == 2
        assert close.pnl == pytest.approx(300.0)
        assert close.pnl_pct == pytest.approx(50.0)
        assert cycle.ledger.open_positions() == {}
        assert second.record.account.equity == pytest.approx(1300.0)
        assert cycle.status.successful_cycles == 2

        account = await cycle.exchange.get_account()
        assert account.equity == pytest.approx(1300.0)

    @pytest.mark.asyncio
    async def test_oracle_sees_open_positions(self, market_data):
        oracle = ScriptedOracle(CandidateDecision(actions=[open_btc()]))
        cycle = make_cycle("alpha", market_data, oracle)

        await cycle.run_once(now=T0)
        await cycle.run_once(now=T0 + timedelta(minutes=3))

        context = oracle.contexts[1]
        assert context.cycle_number == 2
        assert OpenPositionKey("BTCUSDT", Direction.LONG) in context.open_positions
        assert set(context.quotes) == {"BTCUSDT", "SOLUSDT"}

    @pytest.mark.asyncio
    async def test_oracle_timeout_records_failed_cycle(self, market_data):
        cycle = make_cycle("alpha", market_data, SlowOracle(), oracle_timeout_seconds=0.05)

        result = await cycle.run_once(now=T0)

        assert not result.success
        assert result.error.startswith("oracle:")
        assert "timed out" in result.error
        assert result.record.success is False
        assert result.record.actions == []
        assert cycle.status.consecutive_failures == 1
        assert cycle.status.phase == CyclePhase.IDLE
        assert cycle.ledger.record_count() == 1

    @pytest.mark.asyncio
    async def test_exchange_failure_records_only_filled_actions(self, market_data):
        """The record reflects what executed, not what was requested."""
        sol = CandidateAction(symbol="SOLUSDT", action="open_long", position_size_usd=1000.0, leverage=10)
        oracle = ScriptedOracle(CandidateDecision(actions=[open_btc(), sol]))
        exchange = FlakyExchange("SOLUSDT", initial_balance=1000.0)
        cycle = make_cycle("alpha", market_data, oracle, exchange=exchange)

        result = await cycle.run_once(now=T0)

        assert not result.success
        assert result.error.startswith("exchange:")
        assert [a.symbol for a in result.record.actions] == ["BTCUSDT"]
        assert list(cycle.ledger.open_positions()) == [OpenPositionKey("BTCUSDT", Direction.LONG)]

    @pytest.mark.asyncio
    async def test_rejection_is_recorded(self, market_data):
        oracle = ScriptedOracle(CandidateDecision(actions=[open_btc(size=1000.0)]))
        cycle = make_cycle("alpha", market_data, oracle)

        result = await cycle.run_once(now=T0)

        assert result.success
        assert result.record.actions == []
        assert result.record.rejections[0].rule == "position_size"
        assert result.executions == []

    @pytest.mark.asyncio
    async def test_untracked_symbol_is_dropped_with_note(self, market_data):
        doge = CandidateAction(symbol="DOGEUSDT", action="open_long", position_size_usd=1000.0)
        cycle = make_cycle("alpha", market_data, ScriptedOracle(CandidateDecision(actions=[doge])))

        result = await cycle.run_once(now=T0)

        assert result.record.actions == []
        assert result.record.rejections == []
        assert any("DOGEUSDT" in n and "not tracked" in n for n in result.record.notes)

    @pytest.mark.asyncio
    async def test_reconciliation_divergence_is_noted(self, market_data):
        """A position opened outside the ledger shows up as exchange_only."""
        exchange = PaperExchange(initial_balance=1000.0)
        cycle = make_cycle("alpha", market_data, ScriptedOracle(), exchange=exchange)
        outside = make_cycle("outside", market_data, ScriptedOracle(CandidateDecision(actions=[open_btc()])),
                             exchange=exchange)
        await outside.run_once(now=T0)

        result = await cycle.run_once(now=T0)
        assert any("exchange_only" in n for n in result.record.notes)

    def test_check_ready_halts_agent(self, market_data):
        cycle = make_cycle("alpha", market_data, ScriptedOracle(), oracle_api_key="")

        with pytest.raises(ConfigurationError):
            cycle.check_ready()
        assert cycle.status.halted
        assert "oracle API key" in cycle.status.halt_reason

    @pytest.mark.asyncio
    async def test_replaced_risk_config_applies_next_cycle(self, market_data):
        oracle = ScriptedOracle(
            CandidateDecision(actions=[open_btc(size=1000.0)]),
            CandidateDecision(actions=[open_btc(size=1000.0)]),
        )
        cycle = make_cycle("alpha", market_data, oracle)

        first = await cycle.run_once(now=T0)
        assert first.record.rejections

        cycle.replace_risk_config(RiskConfig().replace(major_position_range=(0.5, 10.0)))
        second = await cycle.run_once(now=T0 + timedelta(minutes=3))
        assert second.record.rejections == []
        assert len(second.record.actions) == 1

    def test_invalid_risk_config_is_refused(self, market_data):
        cycle = make_cycle("alpha", market_data, ScriptedOracle())
        original = cycle.risk_config

        with pytest.raises(ConfigurationError):
            cycle.replace_risk_config(RiskConfig(max_margin_usage=1.5))
        assert cycle.risk_config is original


class TestAgentScheduler:
    """Test independent per-agent loops."""

    @pytest.mark.asyncio
    async def test_start_runs_a_cycle_and_stops(self, market_data):
        cycle = make_cycle("alpha", market_data, ScriptedOracle())
        scheduler = AgentScheduler([cycle])

        assert scheduler.start() == ["alpha"]
        await asyncio.sleep(0.1)
        assert scheduler.running

        await scheduler.stop(timeout=2)
        assert not scheduler.running
        assert cycle.status.cycles_run == 1
        assert cycle.ledger.record_count() == 1

    @pytest.mark.asyncio
    async def test_halted_agent_is_not_started(self, market_data):
        good = make_cycle("alpha", market_data, ScriptedOracle())
        bad = make_cycle("beta", market_data, ScriptedOracle(), oracle_api_key="")
        scheduler = AgentScheduler([good, bad])

        assert scheduler.start() == ["alpha"]
        await scheduler.stop(timeout=2)

        assert bad.status.halted
        assert bad.status.cycles_run == 0
        assert [s["agent_id"] for s in scheduler.status()] == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_crashing_agent_does_not_stop_others(self, market_data):
        crashing = make_cycle("alpha", market_data, CrashingOracle())
        healthy = make_cycle("beta", market_data, ScriptedOracle())
        scheduler = AgentScheduler([crashing, healthy])

        scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop(timeout=2)

        assert crashing.status.failed_cycles == 1
        assert "RuntimeError" in crashing.status.last_error
        assert crashing.status.phase == CyclePhase.IDLE
        assert healthy.status.successful_cycles == 1

    @pytest.mark.asyncio
    async def test_replace_risk_config_reaches_every_agent(self, market_data):
        cycles = [make_cycle(a, market_data, ScriptedOracle()) for a in ("alpha", "beta")]
        scheduler = AgentScheduler(cycles)
        risk = RiskConfig(min_risk_reward=2.0)

        scheduler.replace_risk_config(risk)

        assert all(c.risk_config is risk for c in cycles)
