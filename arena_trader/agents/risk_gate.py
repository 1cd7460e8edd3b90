"""
RiskValidator - Deterministic gatekeeper.

Purpose: Enforce hard risk limits on every oracle-requested action before it
reaches the exchange. This is the "hard wall" between LLM and execution.

Rules enforced on opens, in priority order (first violation wins):
- anti-stacking: no second open on the same (symbol, direction)
- leverage ceiling per asset class, capped for restricted sub-accounts
- position size as a multiple of equity
- risk-reward ratio when both stop-loss and take-profit are given
- aggregate margin usage as a fraction of equity
- open-interest liquidity floor

Closes only reduce risk and pass straight through.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from ..config import RiskConfig, RiskRule, RulePolicy
from ..schemas import (
    AccountState,
    CandidateAction,
    CandidateDecision,
    Direction,
    MarketQuote,
    OpenPositionKey,
    OpenPositionSnapshot,
    RuleRejection,
    utcnow,
)

logger = logging.getLogger("arena_trader.agents.risk_gate")

# Relative gap between an oracle price hint and the market quote worth noting.
PRICE_HINT_TOLERANCE = 0.01


@dataclass
class Approved:
    """Action cleared for execution, possibly resized."""
    action: CandidateAction
    reference_price: float
    notes: List[str] = field(default_factory=list)

    approved = True

    @property
    def quantity(self) -> float:
        return self.action.quantity(self.reference_price)

    @property
    def notional(self) -> float:
        return self.quantity * self.reference_price

    @property
    def margin(self) -> float:
        if self.action.action.is_close:
            return 0.0
        return self.notional / max(self.action.leverage, 1)


@dataclass
class Rejected:
    """Action refused, with the rule that fired and its numbers."""
    action: CandidateAction
    rejection: RuleRejection

    approved = False

    @property
    def reason(self) -> str:
        return self.rejection.reason


RiskOutcome = Union[Approved, Rejected]


@dataclass
class BatchValidation:
    approved: List[Approved] = field(default_factory=list)
    rejected: List[Rejected] = field(default_factory=list)

    @property
    def rejections(self) -> List[RuleRejection]:
        return [r.rejection for r in self.rejected]

    @property
    def notes(self) -> List[str]:
        notes = []
        for outcome in self.approved:
            notes.extend(f"{outcome.action.symbol}: {n}" for n in outcome.notes)
        for outcome in self.rejected:
            notes.append(f"{outcome.action.symbol}: rejected by {outcome.rejection.rule}: {outcome.reason}")
        return notes


class RiskValidator:
    """Deterministic risk gatekeeper - the hard wall before execution."""

    def validate(
        self,
        candidate: CandidateAction,
        account: AccountState,
        open_positions: Dict[OpenPositionKey, OpenPositionSnapshot],
        risk_config: RiskConfig,
        quote: Optional[MarketQuote] = None,
    ) -> RiskOutcome:
        """
        Validate one candidate action against all risk rules.

        Returns:
            Approved with the (possibly clamped) action, or Rejected naming the
            rule that fired and the values that caused it.
        """
        price, notes = self._reference_price(candidate, quote)

        if candidate.action.is_close:
            if candidate.key not in open_positions:
                notes.append("close without ledger position - deferring to exchange")
            return Approved(action=candidate, reference_price=price or 0.0, notes=notes)

        # 1. Anti-stacking
        if candidate.key in open_positions:
            existing = open_positions[candidate.key]
            return self._reject(
                candidate, RiskRule.ANTI_STACKING,
                f"anti-stacking: {candidate.key.label} already open",
                {"existing_quantity": existing.quantity, "existing_price": existing.price},
            )

        if not price or price <= 0:
            return self._reject(
                candidate, RiskRule.POSITION_SIZE,
                "no reference price to size the position",
                {"price": price or 0.0},
            )

        leverage = candidate.leverage
        notional = candidate.notional(price)
        equity = account.equity

        # 2. Leverage ceiling
        if leverage < 1:
            return self._reject(
                candidate, RiskRule.LEVERAGE,
                f"leverage {leverage}x is below 1x",
                {"requested": float(leverage)},
            )
        ceiling = risk_config.max_leverage_for(candidate.symbol, account.restricted)
        if leverage > ceiling:
            values = {"requested": float(leverage), "ceiling": float(ceiling)}
            if risk_config.policy_for(RiskRule.LEVERAGE) != RulePolicy.CLAMP:
                return self._reject(
                    candidate, RiskRule.LEVERAGE,
                    f"leverage {leverage}x exceeds ceiling {ceiling}x",
                    values,
                )
            notes.append(f"leverage clamped from {leverage}x to {ceiling}x")
            leverage = ceiling

        # 3. Position size bounds
        if equity <= 0:
            return self._reject(
                candidate, RiskRule.POSITION_SIZE,
                "account equity is not positive",
                {"equity": equity},
            )
        low, high = risk_config.position_range_for(candidate.symbol)
        multiple = notional / equity
        size_values = {
            "notional": notional, "equity": equity,
            "multiple": multiple, "min_multiple": low, "max_multiple": high,
        }
        if multiple < low:
            return self._reject(
                candidate, RiskRule.POSITION_SIZE,
                f"position {multiple:.2f}x equity is below minimum {low}x",
                size_values,
            )
        if multiple > high:
            if risk_config.policy_for(RiskRule.POSITION_SIZE) != RulePolicy.CLAMP:
                return self._reject(
                    candidate, RiskRule.POSITION_SIZE,
                    f"position {multiple:.2f}x equity exceeds maximum {high}x",
                    size_values,
                )
            clamped = high * equity
            notes.append(f"size clamped from ${notional:.2f} to ${clamped:.2f}")
            notional = clamped

        # 4. Risk-reward ratio
        if candidate.stop_loss is not None and candidate.take_profit is not None:
            if candidate.action.direction == Direction.LONG:
                loss = price - candidate.stop_loss
                gain = candidate.take_profit - price
            else:
                loss = candidate.stop_loss - price
                gain = price - candidate.take_profit
            rr_values = {
                "entry": price, "stop_loss": candidate.stop_loss,
                "take_profit": candidate.take_profit, "min_ratio": risk_config.min_risk_reward,
            }
            if loss <= 0 or gain <= 0:
                return self._reject(
                    candidate, RiskRule.RISK_REWARD,
                    "stop-loss or take-profit on the wrong side of entry",
                    rr_values,
                )
            ratio = gain / loss
            rr_values["ratio"] = ratio
            if ratio < risk_config.min_risk_reward:
                return self._reject(
                    candidate, RiskRule.RISK_REWARD,
                    f"risk-reward {ratio:.2f}:1 below minimum {risk_config.min_risk_reward}:1",
                    rr_values,
                )

        # 5. Aggregate margin usage
        margin_in_use = sum(p.margin_used for p in open_positions.values())
        margin = notional / leverage
        limit = risk_config.max_margin_usage * equity
        if margin_in_use + margin > limit:
            margin_values = {
                "margin_in_use": margin_in_use, "candidate_margin": margin,
                "limit": limit, "equity": equity,
            }
            if risk_config.policy_for(RiskRule.MARGIN_USAGE) != RulePolicy.CLAMP:
                return self._reject(
                    candidate, RiskRule.MARGIN_USAGE,
                    f"margin ${margin_in_use + margin:.2f} would exceed ${limit:.2f}",
                    margin_values,
                )
            remaining = limit - margin_in_use
            if remaining <= 0 or remaining * leverage / equity < low:
                return self._reject(
                    candidate, RiskRule.MARGIN_USAGE,
                    f"remaining margin ${max(remaining, 0.0):.2f} cannot fund a minimum-size position",
                    margin_values,
                )
            notes.append(f"margin clamped from ${margin:.2f} to ${remaining:.2f}")
            notional = remaining * leverage

        # 6. Liquidity
        open_interest = quote.open_interest_usd if quote else None
        if open_interest is None:
            notes.append("open interest unknown - liquidity check skipped")
        elif open_interest < risk_config.min_open_interest_usd:
            return self._reject(
                candidate, RiskRule.LIQUIDITY,
                f"open interest ${open_interest / 1e6:.2f}M below ${risk_config.min_open_interest_usd / 1e6:.2f}M",
                {"open_interest_usd": open_interest, "min_open_interest_usd": risk_config.min_open_interest_usd},
            )

        final = candidate.model_copy(update={
            "leverage": leverage,
            "position_size_usd": notional,
            "quantity_hint": notional / price,
            "price_hint": price,
        })
        logger.info(
            f"RISK GATE PASSED: {final.symbol} {final.action.value} ${notional:.2f} @ {leverage}x"
        )
        return Approved(action=final, reference_price=price, notes=notes)

    def validate_batch(
        self,
        decision: CandidateDecision,
        account: AccountState,
        open_positions: Dict[OpenPositionKey, OpenPositionSnapshot],
        risk_config: RiskConfig,
        quotes: Optional[Dict[str, MarketQuote]] = None,
        now: Optional[datetime] = None,
    ) -> BatchValidation:
        """
        Validate a whole decision, closes first, against a provisional copy
        of open positions so earlier approvals constrain later candidates.
        """
        quotes = quotes or {}
        now = now or utcnow()
        provisional = dict(open_positions)
        result = BatchValidation()

        ordered = sorted(decision.actions, key=lambda a: 0 if a.action.is_close else 1)
        for candidate in ordered:
            outcome = self.validate(
                candidate, account, provisional, risk_config, quotes.get(candidate.symbol)
            )
            if isinstance(outcome, Rejected):
                result.rejected.append(outcome)
                continue

            result.approved.append(outcome)
            if candidate.action.is_close:
                provisional.pop(candidate.key, None)
            else:
                provisional[candidate.key] = OpenPositionSnapshot(
                    price=outcome.reference_price,
                    quantity=outcome.quantity,
                    leverage=outcome.action.leverage,
                    timestamp=now,
                )
        return result

    @staticmethod
    def _reference_price(
        candidate: CandidateAction,
        quote: Optional[MarketQuote],
    ) -> Tuple[Optional[float], List[str]]:
        """Market price when quoted; the oracle's hint only as a fallback."""
        notes: List[str] = []
        hint = candidate.price_hint
        if quote is None or quote.price <= 0:
            return hint, notes
        if hint and abs(hint - quote.price) > PRICE_HINT_TOLERANCE * quote.price:
            notes.append(f"price hint {hint:.4f} ignored, sized at market {quote.price:.4f}")
        return quote.price, notes

    @staticmethod
    def _reject(
        candidate: CandidateAction,
        rule: RiskRule,
        reason: str,
        values: Dict[str, float],
    ) -> Rejected:
        logger.warning(f"RISK GATE BLOCKED: {candidate.symbol} {candidate.action.value} [{rule.value}] {reason} {values}")
        rejection = RuleRejection(
            symbol=candidate.symbol,
            action=candidate.action.value,
            rule=rule,
            reason=reason,
            values=values,
        )
        return Rejected(action=candidate, rejection=rejection)
