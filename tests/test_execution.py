"""
Tests for the paper exchange and ledger/exchange reconciliation.
"""
import pytest

from arena_trader.agents.execution import PaperExchange
from arena_trader.agents.portfolio import reconcile
from arena_trader.agents.risk_gate import Approved
from arena_trader.errors import ExchangeError
from arena_trader.schemas import (
    AccountState,
    CandidateAction,
    Direction,
    ExchangePosition,
    OpenPositionKey,
    OpenPositionSnapshot,
)

from conftest import T0


def approved(symbol, action, price, quantity=None, leverage=10):
    return Approved(
        action=CandidateAction(symbol=symbol, action=action, quantity_hint=quantity, leverage=leverage),
        reference_price=price,
    )


class TestPaperExchange:
    """Test simulated fills and account accounting."""

    @pytest.mark.asyncio
    async def test_open_and_close_settles_pnl(self):
        exchange = PaperExchange(initial_balance=1000.0)

        opened = await exchange.execute(approved("BTCUSDT", "open_long", 60000.0, 0.1))
        assert opened.fill_price == 60000.0
        assert opened.fill_quantity == pytest.approx(0.1)

        account = await exchange.get_account({"BTCUSDT": 61000.0})
        assert account.unrealized_pnl == pytest.approx(100.0)
        assert account.equity == pytest.approx(1100.0)
        assert account.available_balance == pytest.approx(500.0)
        assert account.positions[0].mark_price == 61000.0

        closed = await exchange.execute(approved("BTCUSDT", "close_long", 63000.0))
        assert closed.fill_quantity == pytest.approx(0.1)

        account = await exchange.get_account()
        assert account.equity == pytest.approx(1300.0)
        assert account.positions == []

    @pytest.mark.asyncio
    async def test_short_profit(self):
        exchange = PaperExchange(initial_balance=1000.0)
        await exchange.execute(approved("SOLUSDT", "open_short", 100.0, 5, leverage=5))
        await exchange.execute(approved("SOLUSDT", "close_short", 90.0))

        assert exchange.balance == pytest.approx(1050.0)

    @pytest.mark.asyncio
    async def test_partial_close_keeps_remainder(self):
        exchange = PaperExchange(initial_balance=1000.0)
        await exchange.execute(approved("BTCUSDT", "open_long", 60000.0, 0.1))
        result = await exchange.execute(approved("BTCUSDT", "close_long", 60000.0, 0.04))

        assert result.fill_quantity == pytest.approx(0.04)
        account = await exchange.get_account()
        assert account.positions[0].quantity == pytest.approx(0.06)

    @pytest.mark.asyncio
    async def test_slippage_moves_against_trader(self):
        exchange = PaperExchange(initial_balance=1000.0, slippage_bps=10)
        opened = await exchange.execute(approved("BTCUSDT", "open_long", 60000.0, 0.1))
        closed = await exchange.execute(approved("BTCUSDT", "close_long", 60000.0))

        assert opened.fill_price == pytest.approx(60060.0)
        assert closed.fill_price == pytest.approx(59940.0)
        assert exchange.balance < 1000.0

    @pytest.mark.asyncio
    async def test_insufficient_margin(self):
        exchange = PaperExchange(initial_balance=100.0)
        with pytest.raises(ExchangeError, match="Insufficient margin"):
            await exchange.execute(approved("BTCUSDT", "open_long", 60000.0, 0.1))

    @pytest.mark.asyncio
    async def test_duplicate_open_refused(self):
        exchange = PaperExchange(initial_balance=1000.0)
        await exchange.execute(approved("BTCUSDT", "open_long", 60000.0, 0.01))
        with pytest.raises(ExchangeError, match="already open"):
            await exchange.execute(approved("BTCUSDT", "open_long", 60000.0, 0.01))

    @pytest.mark.asyncio
    async def test_close_without_position(self):
        exchange = PaperExchange(initial_balance=1000.0)
        with pytest.raises(ExchangeError, match="No open"):
            await exchange.execute(approved("BTCUSDT", "close_short", 60000.0))

    @pytest.mark.asyncio
    async def test_restricted_flag_is_reported(self):
        exchange = PaperExchange(restricted=True)
        account = await exchange.get_account()
        assert account.restricted is True
        assert account.equity == 1000.0


class TestReconciliation:
    """Test ledger versus exchange divergence reporting."""

    def _account(self, *positions):
        return AccountState(equity=1000.0, available_balance=1000.0, positions=list(positions))

    def test_in_sync(self):
        ledger = {OpenPositionKey("BTCUSDT", Direction.LONG): OpenPositionSnapshot(60000.0, 0.1, 10, T0)}
        account = self._account(
            ExchangePosition(symbol="BTCUSDT", side="long", quantity=0.1, entry_price=60000.0, leverage=10)
        )
        report = reconcile(ledger, account)
        assert report.in_sync
        assert report.notes() == []

    def test_divergence_kinds(self):
        ledger = {
            OpenPositionKey("BTCUSDT", Direction.LONG): OpenPositionSnapshot(60000.0, 0.1, 10, T0),
            OpenPositionKey("ETHUSDT", Direction.SHORT): OpenPositionSnapshot(3000.0, 1.0, 5, T0),
        }
        account = self._account(
            ExchangePosition(symbol="ETHUSDT", side="short", quantity=0.5, entry_price=3000.0),
            ExchangePosition(symbol="SOLUSDT", side="long", quantity=10, entry_price=100.0),
        )
        report = reconcile(ledger, account, "alpha")

        kinds = {d.key.symbol: d.kind for d in report.divergences}
        assert kinds == {
            "BTCUSDT": "ledger_only",
            "ETHUSDT": "quantity_mismatch",
            "SOLUSDT": "exchange_only",
        }
        assert all(n.startswith("reconciliation: ") for n in report.notes())
