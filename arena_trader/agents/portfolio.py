"""
Portfolio reconciliation - ledger view versus exchange view.

Purpose: Compare the exchange's open positions with the ledger's open-position
map each cycle. Divergence is reported and logged; neither side is trusted
over the other and nothing is overwritten.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from ..schemas import AccountState, OpenPositionKey, OpenPositionSnapshot

logger = logging.getLogger("arena_trader.agents.portfolio")

QUANTITY_TOLERANCE = 1e-6


@dataclass
class Divergence:
    key: OpenPositionKey
    ledger_quantity: float
    exchange_quantity: float

    @property
    def kind(self) -> str:
        if self.ledger_quantity == 0:
            return "exchange_only"
        if self.exchange_quantity == 0:
            return "ledger_only"
        return "quantity_mismatch"

    def describe(self) -> str:
        return (
            f"{self.key.label}: {self.kind} "
            f"(ledger {self.ledger_quantity:.6f}, exchange {self.exchange_quantity:.6f})"
        )


@dataclass
class ReconciliationReport:
    divergences: List[Divergence] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not self.divergences

    def notes(self) -> List[str]:
        return [f"reconciliation: {d.describe()}" for d in self.divergences]


def reconcile(
    ledger_positions: Dict[OpenPositionKey, OpenPositionSnapshot],
    account: AccountState,
    agent_id: str = "",
) -> ReconciliationReport:
    exchange_qty: Dict[OpenPositionKey, float] = {}
    for pos in account.positions:
        exchange_qty[pos.key] = exchange_qty.get(pos.key, 0.0) + pos.quantity

    report = ReconciliationReport()
    for key in sorted(set(ledger_positions) | set(exchange_qty)):
        ledger_q = ledger_positions[key].quantity if key in ledger_positions else 0.0
        exchange_q = exchange_qty.get(key, 0.0)
        if abs(ledger_q - exchange_q) > QUANTITY_TOLERANCE * max(1.0, abs(ledger_q)):
            report.divergences.append(Divergence(key, ledger_q, exchange_q))

    for divergence in report.divergences:
        logger.warning(f"[{agent_id}] Position divergence {divergence.describe()}")
    return report
