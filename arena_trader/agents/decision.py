"""
Oracle - LLM-based trade selection for perpetual futures.

Purpose: Turn the gathered cycle context into zero or more candidate actions.
The oracle is untrusted: its output is parsed defensively and anything
malformed degrades to "no actions this cycle". Every hard limit is enforced
afterwards by the RiskValidator, the prompt only states them.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from openai import OpenAI

from ..analytics.performance import PerformanceSnapshot
from ..config import RiskConfig
from ..errors import OracleError
from ..schemas import (
    AccountState,
    CandidateDecision,
    MarketQuote,
    OpenPositionKey,
    OpenPositionSnapshot,
    parse_candidate_decision,
)

logger = logging.getLogger("arena_trader.agents.decision")

DECISION_SYSTEM_PROMPT = """You are a disciplined crypto perpetual-futures trader competing against other agents. Each cycle you may open, close, or hold positions.

HARD RULES (orders violating them are rejected before reaching the exchange):
1. Never open a second position in the same symbol and direction.
2. Leverage ceilings: {major_leverage}x for {majors}, {altcoin_leverage}x for everything else{restricted_note}.
3. Position size (notional) must be {major_min}-{major_max}x account equity for {majors}, {alt_min}-{alt_max}x for altcoins.
4. If you set stop_loss and take_profit, reward:risk must be at least {min_rr}:1.
5. Total margin in use must stay below {margin_pct:.0%} of equity.
6. Only trade symbols with open interest above ${min_oi_m:.0f}M.
7. Close losing or invalidated positions before opening new ones.

First explain your reasoning briefly, then output a JSON array of actions. Use an empty array to hold.

[
  {{"symbol": "BTCUSDT", "action": "open_long", "leverage": 10, "position_size_usd": 5000,
    "stop_loss": 58000, "take_profit": 66000, "confidence": 80, "reasoning": "..."}},
  {{"symbol": "ETHUSDT", "action": "close_short", "confidence": 70, "reasoning": "..."}}
]

Valid actions: open_long, open_short, close_long, close_short, hold, wait."""


@dataclass
class DecisionContext:
    """Everything the oracle sees for one cycle."""
    agent_id: str
    cycle_number: int
    timestamp: datetime
    account: AccountState
    open_positions: Dict[OpenPositionKey, OpenPositionSnapshot]
    quotes: Dict[str, MarketQuote]
    performance: PerformanceSnapshot
    risk_config: RiskConfig
    symbols: List[str] = field(default_factory=list)


class Oracle(ABC):
    """Source of candidate decisions."""

    @abstractmethod
    async def request_decision(self, context: DecisionContext) -> CandidateDecision:
        ...


def render_system_prompt(risk: RiskConfig, restricted: bool = False) -> str:
    restricted_note = (
        f" (this sub-account is capped at {risk.restricted_max_leverage}x overall)" if restricted else ""
    )
    return DECISION_SYSTEM_PROMPT.format(
        major_leverage=risk.major_max_leverage,
        altcoin_leverage=risk.altcoin_max_leverage,
        majors="/".join(risk.major_symbols),
        restricted_note=restricted_note,
        major_min=risk.major_position_range[0],
        major_max=risk.major_position_range[1],
        alt_min=risk.altcoin_position_range[0],
        alt_max=risk.altcoin_position_range[1],
        min_rr=risk.min_risk_reward,
        margin_pct=risk.max_margin_usage,
        min_oi_m=risk.min_open_interest_usd / 1e6,
    )


def render_performance(perf: PerformanceSnapshot) -> str:
    """Feedback section so the oracle can adapt to its own results."""
    if perf.total_trades == 0:
        return "No closed trades yet."

    pf = "inf" if perf.profit_factor_unbounded else f"{perf.profit_factor:.2f}"
    lines = [
        f"Closed trades: {perf.total_trades} | Win rate: {perf.win_rate:.1%} | Profit factor: {pf}",
        f"Total P&L: ${perf.total_pnl:.2f} | Avg win: ${perf.avg_win:.2f} | Avg loss: ${perf.avg_loss:.2f}",
        f"Sharpe: {perf.sharpe_ratio:.2f} | Losing streak: {perf.losing_streak}",
    ]
    if perf.best_symbol:
        lines.append(f"Best symbol: {perf.best_symbol} | Worst symbol: {perf.worst_symbol}")
    if perf.losing_streak >= 3:
        lines.append("WARNING: 3+ consecutive losses - reduce size or stand aside.")
    for trade in perf.recent_trades:
        lines.append(
            f"  {trade['symbol']} {trade['side']}: ${trade['pnl']:.2f} ({trade['pnl_pct']:.1f}%)"
        )
    return "\n".join(lines)


def render_context(context: DecisionContext) -> str:
    acct = context.account
    lines = [
        f"Time: {context.timestamp.isoformat()} | Cycle #{context.cycle_number}",
        "",
        "ACCOUNT:",
        f"  Equity: ${acct.equity:.2f} | Available: ${acct.available_balance:.2f} | "
        f"Unrealized P&L: ${acct.unrealized_pnl:.2f}",
        "",
        "OPEN POSITIONS:",
    ]
    if context.open_positions:
        for key, pos in context.open_positions.items():
            quote = context.quotes.get(key.symbol)
            mark = f"{quote.price:.4f}" if quote else "n/a"
            lines.append(
                f"  {key.symbol} {key.side.value}: qty {pos.quantity:.6f} @ {pos.price:.4f}, "
                f"{pos.leverage}x, mark {mark}, since {pos.timestamp.isoformat()}"
            )
    else:
        lines.append("  None")

    lines += ["", "MARKET:"]
    for symbol in context.symbols:
        quote = context.quotes.get(symbol)
        if quote is None:
            lines.append(f"  {symbol}: unavailable")
            continue
        oi = f"${quote.open_interest_usd / 1e6:.1f}M" if quote.open_interest_usd is not None else "unknown"
        lines.append(f"  {symbol}: {quote.price:.4f} | OI {oi}")

    lines += ["", "PERFORMANCE:", render_performance(context.performance)]
    return "\n".join(lines)


class OpenAIOracle(Oracle):
    """Chat-completion oracle; the blocking client runs in a worker thread."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        restricted: bool = False,
        client: Optional[OpenAI] = None,
    ):
        self.model = model
        self.restricted = restricted
        self.client = client or OpenAI(api_key=api_key, base_url=base_url)

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=0.3,
            max_tokens=1500,
        )
        return response.choices[0].message.content or ""

    async def request_decision(self, context: DecisionContext) -> CandidateDecision:
        system_prompt = render_system_prompt(context.risk_config, self.restricted)
        user_prompt = render_context(context)
        try:
            content = await asyncio.to_thread(self._complete, system_prompt, user_prompt)
        except Exception as e:
            raise OracleError(f"{self.model} request failed: {e}")

        if not content.strip():
            logger.warning(f"[{context.agent_id}] Empty oracle response")
            return CandidateDecision(rationale="", parse_errors=["Empty oracle response"])

        decision = parse_candidate_decision(content)
        logger.info(
            f"[{context.agent_id}] Oracle proposed {len(decision.actions)} actions"
            + (f" ({len(decision.parse_errors)} malformed)" if decision.parse_errors else "")
        )
        return decision
