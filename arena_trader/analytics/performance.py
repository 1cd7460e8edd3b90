"""
Performance tracker for arena agents.

Derives rolling statistics from the ledger's closed trades: win rate,
profit factor, Sharpe ratio, per-symbol breakdown and losing streak.
Recomputed on demand every cycle over a bounded lookback window.
"""
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..schemas import ClosedTrade

logger = logging.getLogger("arena_trader.analytics.performance")

PROFIT_FACTOR_UNBOUNDED = float("inf")


@dataclass
class SymbolStats:
    """Per-symbol breakdown."""
    symbol: str
    total_trades: int = 0
    winning_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0


@dataclass
class PerformanceSnapshot:
    """Window-bounded aggregate over closed trades."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0

    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    profit_factor: float = 0.0

    sharpe_ratio: float = 0.0
    avg_holding_seconds: float = 0.0
    losing_streak: int = 0

    best_symbol: Optional[str] = None
    worst_symbol: Optional[str] = None
    symbol_stats: Dict[str, SymbolStats] = field(default_factory=dict)
    recent_trades: List[dict] = field(default_factory=list)

    @property
    def profit_factor_unbounded(self) -> bool:
        return math.isinf(self.profit_factor)

    def to_dict(self) -> dict:
        data = asdict(self)
        if not math.isfinite(data["profit_factor"]):
            data["profit_factor"] = None
        return data


class PerformanceTracker:
    """
    Summarizes closed trades into a PerformanceSnapshot.

    Per-trade return is P&L as a fraction of margin used. Sharpe uses the
    population standard deviation (numpy default) and is scaled by
    sqrt(annualization); it is 0 with fewer than two trades or zero spread.
    """

    def __init__(self, window_size: int = 100, annualization: float = 1.0):
        self.window_size = window_size
        self.annualization = annualization

    def summarize(
        self,
        closed_trades: Sequence[ClosedTrade],
        window_size: Optional[int] = None,
    ) -> PerformanceSnapshot:
        window = window_size if window_size is not None else self.window_size
        trades = list(closed_trades)
        if window and window > 0:
            trades = trades[-window:]

        if not trades:
            return PerformanceSnapshot()

        pnls = np.array([t.pnl for t in trades], dtype=float)
        winners = pnls[pnls > 0]
        losers = pnls[pnls < 0]

        total = len(trades)
        gross_profit = float(winners.sum()) if winners.size else 0.0
        gross_loss = float(abs(losers.sum())) if losers.size else 0.0

        if gross_loss > 0:
            profit_factor = gross_profit / gross_loss
        elif gross_profit > 0:
            profit_factor = PROFIT_FACTOR_UNBOUNDED
        else:
            profit_factor = 0.0

        symbol_stats = self._symbol_breakdown(trades)
        ranked = sorted(symbol_stats.values(), key=lambda s: s.total_pnl)

        return PerformanceSnapshot(
            total_trades=total,
            winning_trades=int(winners.size),
            losing_trades=int(losers.size),
            win_rate=winners.size / total,
            total_pnl=float(pnls.sum()),
            avg_pnl=float(pnls.mean()),
            avg_win=float(winners.mean()) if winners.size else 0.0,
            avg_loss=float(abs(losers.mean())) if losers.size else 0.0,
            gross_profit=gross_profit,
            gross_loss=gross_loss,
            profit_factor=profit_factor,
            sharpe_ratio=self.sharpe_ratio([t.return_on_margin for t in trades]),
            avg_holding_seconds=float(np.mean([t.duration_seconds for t in trades])),
            losing_streak=self.losing_streak(pnls.tolist()),
            best_symbol=ranked[-1].symbol,
            worst_symbol=ranked[0].symbol,
            symbol_stats=symbol_stats,
            recent_trades=[
                {
                    "symbol": t.symbol,
                    "side": t.side,
                    "pnl": t.pnl,
                    "pnl_pct": t.pnl_pct,
                    "duration_seconds": t.duration_seconds,
                    "exit_time": t.exit_time.isoformat(),
                }
                for t in trades[-5:]
            ],
        )

    def sharpe_ratio(self, returns: Sequence[float]) -> float:
        if len(returns) < 2:
            return 0.0
        arr = np.asarray(returns, dtype=float)
        if np.ptp(arr) == 0:
            return 0.0
        mean = float(np.mean(arr))
        std = float(np.std(arr))
        # float noise on near-identical returns
        if not math.isfinite(std) or std <= 1e-12 * max(1.0, abs(mean)):
            return 0.0
        return mean / std * math.sqrt(self.annualization)

    @staticmethod
    def losing_streak(pnls: Sequence[float]) -> int:
        """Trailing consecutive losses counted back from the most recent trade."""
        streak = 0
        for pnl in reversed(pnls):
            if pnl < 0:
                streak += 1
            else:
                break
        return streak

    @staticmethod
    def _symbol_breakdown(trades: Sequence[ClosedTrade]) -> Dict[str, SymbolStats]:
        stats: Dict[str, SymbolStats] = {}
        for trade in trades:
            entry = stats.setdefault(trade.symbol, SymbolStats(symbol=trade.symbol))
            entry.total_trades += 1
            entry.total_pnl += trade.pnl
            if trade.is_winner:
                entry.winning_trades += 1

        for entry in stats.values():
            entry.win_rate = entry.winning_trades / entry.total_trades
            entry.avg_pnl = entry.total_pnl / entry.total_trades
        return stats
