"""
Exchange - Order placement for approved actions.

Purpose: Turn an approved action into a fill. The ExecutionResult carries
the actual fill price and quantity, which the ledger records instead of
the request.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..errors import ExchangeError
from ..schemas import (
    AccountState,
    Direction,
    ExchangePosition,
    ExecutionResult,
    OpenPositionKey,
    utcnow,
)
from .risk_gate import Approved

logger = logging.getLogger("arena_trader.agents.execution")


class Exchange(ABC):
    """Venue that fills approved actions and reports the account."""

    @abstractmethod
    async def execute(self, approved: Approved) -> ExecutionResult:
        ...

    @abstractmethod
    async def get_account(self, mark_prices: Optional[Dict[str, float]] = None) -> AccountState:
        ...


class PaperExchange(Exchange):
    """
    Simulated perpetual-futures account.

    Fills at the reference price moved against the trader by slippage_bps.
    Margin is notional / leverage; realized P&L settles into the wallet
    balance on close.
    """

    def __init__(self, initial_balance: float = 1000.0, slippage_bps: float = 0.0, restricted: bool = False):
        self.balance = initial_balance
        self.slippage_bps = slippage_bps
        self.restricted = restricted
        self._positions: Dict[OpenPositionKey, ExchangePosition] = {}
        self._marks: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _fill_price(self, price: float, side: Direction, opening: bool) -> float:
        buying = (side == Direction.LONG) == opening
        factor = self.slippage_bps / 10_000
        return price * (1 + factor) if buying else price * (1 - factor)

    def _margin_used(self) -> float:
        return sum(p.quantity * p.entry_price / max(p.leverage, 1) for p in self._positions.values())

    def _unrealized(self) -> float:
        total = 0.0
        for pos in self._positions.values():
            mark = self._marks.get(pos.symbol, pos.entry_price)
            diff = mark - pos.entry_price if pos.side == Direction.LONG else pos.entry_price - mark
            total += diff * pos.quantity
        return total

    async def execute(self, approved: Approved) -> ExecutionResult:
        action = approved.action
        kind = action.action
        key = OpenPositionKey(action.symbol, kind.direction)

        with self._lock:
            if kind.is_open:
                price = approved.reference_price
                quantity = approved.quantity
                if price <= 0 or quantity <= 0:
                    raise ExchangeError(f"Cannot open {action.symbol}: price={price} quantity={quantity}")
                if key in self._positions:
                    raise ExchangeError(f"Position {key.label} already open")

                fill = self._fill_price(price, kind.direction, opening=True)
                margin = fill * quantity / max(action.leverage, 1)
                available = self.balance + self._unrealized() - self._margin_used()
                if margin > available:
                    raise ExchangeError(
                        f"Insufficient margin for {action.symbol}: need ${margin:.2f}, have ${available:.2f}"
                    )
                self._positions[key] = ExchangePosition(
                    symbol=action.symbol,
                    side=kind.direction,
                    quantity=quantity,
                    entry_price=fill,
                    leverage=action.leverage,
                    mark_price=fill,
                )
                self._marks[action.symbol] = fill
            else:
                pos = self._positions.get(key)
                if pos is None:
                    raise ExchangeError(f"No open {key.label} position to close")
                price = approved.reference_price or self._marks.get(action.symbol, pos.entry_price)
                requested = approved.quantity
                quantity = min(requested, pos.quantity) if requested > 0 else pos.quantity

                fill = self._fill_price(price, kind.direction, opening=False)
                diff = fill - pos.entry_price if pos.side == Direction.LONG else pos.entry_price - fill
                self.balance += diff * quantity
                remaining = pos.quantity - quantity
                if remaining > 1e-12:
                    self._positions[key] = pos.model_copy(update={"quantity": remaining})
                else:
                    del self._positions[key]
                self._marks[action.symbol] = fill

            result = ExecutionResult(
                order_id=f"paper-{uuid.uuid4().hex[:12]}",
                symbol=action.symbol,
                action=kind,
                fill_price=fill,
                fill_quantity=quantity,
                leverage=action.leverage,
                timestamp=utcnow(),
            )

        logger.info(
            f"PAPER FILL: {result.symbol} {kind.value} {result.fill_quantity:.6f} @ {result.fill_price:.4f} -> {result.order_id}"
        )
        return result

    async def get_account(self, mark_prices: Optional[Dict[str, float]] = None) -> AccountState:
        with self._lock:
            if mark_prices:
                self._marks.update(mark_prices)
            unrealized = self._unrealized()
            equity = self.balance + unrealized
            positions = []
            for pos in self._positions.values():
                mark = self._marks.get(pos.symbol, pos.entry_price)
                diff = mark - pos.entry_price if pos.side == Direction.LONG else pos.entry_price - mark
                positions.append(pos.model_copy(update={
                    "mark_price": mark,
                    "unrealized_pnl": diff * pos.quantity,
                }))
            return AccountState(
                equity=equity,
                available_balance=equity - self._margin_used(),
                unrealized_pnl=unrealized,
                positions=positions,
                restricted=self.restricted,
            )
