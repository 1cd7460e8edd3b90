"""
Tests for fleet assembly from configuration.
"""
import pytest

from arena_trader.config import AgentSettings, TradingConfig, TradingMode
from arena_trader.fleet import build_fleet

from conftest import ScriptedOracle


class TestBuildFleet:

    def test_one_cycle_per_paper_agent(self, tmp_path, market_data):
        config = TradingConfig(
            agents=[AgentSettings(agent_id="alpha"), AgentSettings(agent_id="beta")],
            log_dir=str(tmp_path),
            performance_window=20,
        )
        fleet = build_fleet(config, market_data=market_data, oracle_factory=lambda s: ScriptedOracle())

        assert [c.agent_id for c in fleet.cycles] == ["alpha", "beta"]
        assert fleet.get().agent_id == "alpha"
        assert fleet.get("beta").tracker.window_size == 20
        assert fleet.get("gamma") is None
        assert fleet.cycles[0].risk_config is fleet.cycles[1].risk_config
        assert (tmp_path / "alpha").is_dir()

    def test_agent_without_adapter_is_unbuilt(self, tmp_path, market_data):
        config = TradingConfig(
            agents=[
                AgentSettings(agent_id="alpha"),
                AgentSettings(agent_id="beta", exchange="binance"),
            ],
            trading_mode=TradingMode.LIVE,
            live_trading_enabled=True,
            log_dir=str(tmp_path),
        )
        fleet = build_fleet(config, market_data=market_data, oracle_factory=lambda s: ScriptedOracle())

        assert [c.agent_id for c in fleet.cycles] == ["alpha"]
        assert "binance" in fleet.unbuilt["beta"]

    @pytest.mark.asyncio
    async def test_ledger_resumes_from_log(self, tmp_path, market_data):
        config = TradingConfig(agents=[AgentSettings(agent_id="alpha", oracle_api_key="sk")], log_dir=str(tmp_path))
        fleet = build_fleet(config, market_data=market_data, oracle_factory=lambda s: ScriptedOracle())
        await fleet.cycles[0].run_once()

        restarted = build_fleet(config, market_data=market_data, oracle_factory=lambda s: ScriptedOracle())
        result = await restarted.cycles[0].run_once()
        assert result.cycle_number == 2
