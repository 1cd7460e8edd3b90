"""
Pydantic schemas for the trading fleet - the contract between oracle,
risk gate, exchange and ledger.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import RiskRule
from .errors import InvalidActionKind

logger = logging.getLogger("arena_trader.schemas")

NO_OP_ACTIONS = frozenset({"hold", "wait"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken to be UTC already."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class Direction(str, Enum):
    LONG = "long"
    SHORT = "short"


class ActionKind(str, Enum):
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE_LONG = "close_long"
    CLOSE_SHORT = "close_short"

    @classmethod
    def parse(cls, value: Any) -> "ActionKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidActionKind(str(value))

    @property
    def direction(self) -> Direction:
        return Direction.LONG if self.value.endswith("_long") else Direction.SHORT

    @property
    def is_open(self) -> bool:
        return self.value.startswith("open_")

    @property
    def is_close(self) -> bool:
        return self.value.startswith("close_")


def side_from_action(action: str) -> Optional[Direction]:
    """Direction of a raw action string, or None if it is not a trade kind."""
    try:
        return ActionKind.parse(action).direction
    except InvalidActionKind:
        return None


class OpenPositionKey(NamedTuple):
    symbol: str
    side: Direction

    @property
    def label(self) -> str:
        return f"{self.symbol}_{self.side.value}"


@dataclass(frozen=True)
class OpenPositionSnapshot:
    """Working state of one open position, replaced (never edited) on change."""
    price: float
    quantity: float
    leverage: int
    timestamp: datetime

    @property
    def notional(self) -> float:
        return self.price * self.quantity

    @property
    def margin_used(self) -> float:
        return self.notional / max(self.leverage, 1)


class TradeAction(BaseModel):
    """Immutable record of one executed action, owned by the ledger."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    action: str
    price: float
    quantity: float
    leverage: int = 1
    timestamp: Optional[datetime] = None
    cycle_number: int = 0
    confidence: int = 0
    order_id: Optional[str] = None

    pnl: Optional[float] = Field(default=None, description="Realized P&L, set on matched closes")
    pnl_pct: Optional[float] = Field(default=None, description="P&L as percent of margin used")
    duration_seconds: Optional[float] = Field(default=None, description="Holding time of the matched position")

    @property
    def kind(self) -> ActionKind:
        return ActionKind.parse(self.action)

    @property
    def side(self) -> Optional[Direction]:
        return side_from_action(self.action)

    @property
    def key(self) -> OpenPositionKey:
        return OpenPositionKey(self.symbol.upper(), self.kind.direction)


class AccountSnapshot(BaseModel):
    """Account state captured when a cycle gathers its context."""
    equity: float
    available_balance: float
    unrealized_pnl: float = 0.0
    margin_used: float = 0.0
    position_count: int = 0


class RuleRejection(BaseModel):
    """A candidate action refused by the risk gate, with the numbers that caused it."""
    symbol: str
    action: str
    rule: RiskRule
    reason: str
    values: Dict[str, float] = Field(default_factory=dict)

    model_config = ConfigDict(use_enum_values=True)


class DecisionRecord(BaseModel):
    """One cycle iteration - the audit trail unit."""
    agent_id: str = ""
    cycle_number: int
    timestamp: datetime = Field(default_factory=utcnow)
    actions: List[TradeAction] = Field(default_factory=list)
    rationale: str = ""
    notes: List[str] = Field(default_factory=list)
    rejections: List[RuleRejection] = Field(default_factory=list)
    account: Optional[AccountSnapshot] = None
    success: bool = True
    error: Optional[str] = None


class TradeEvent(BaseModel):
    """Read projection of one trade action, with P&L on matched closes."""
    symbol: str
    side: Direction
    action: str
    timestamp: datetime
    price: float
    quantity: float
    leverage: int
    confidence: int
    cycle_number: int
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    duration: Optional[str] = None
    duration_seconds: Optional[float] = None

    model_config = ConfigDict(use_enum_values=True)


class ClosedTrade(BaseModel):
    """A matched open/close pair, derived by replaying the action log."""
    symbol: str
    side: Direction
    entry_price: float
    exit_price: float
    quantity: float
    leverage: int
    entry_time: datetime
    exit_time: datetime
    pnl: float
    pnl_pct: float
    margin_used: float
    duration_seconds: float

    model_config = ConfigDict(use_enum_values=True)

    @property
    def is_winner(self) -> bool:
        return self.pnl > 0

    @property
    def return_on_margin(self) -> float:
        return self.pnl_pct / 100.0


class CandidateAction(BaseModel):
    """One action requested by the oracle - untrusted until validated."""
    symbol: str = Field(..., min_length=1)
    action: ActionKind
    price_hint: Optional[float] = Field(default=None, gt=0)
    quantity_hint: Optional[float] = None
    position_size_usd: Optional[float] = None
    leverage: int = 1
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    confidence: int = Field(default=0, ge=0, le=100)
    reasoning: str = ""

    model_config = ConfigDict(use_enum_values=False)

    @field_validator("symbol")
    @classmethod
    def uppercase_symbol(cls, v: str) -> str:
        return v.upper().strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def normalise_confidence(cls, v: Any) -> Any:
        if isinstance(v, float) and 0.0 <= v <= 1.0:
            return int(round(v * 100))
        if isinstance(v, float):
            return int(round(v))
        return v

    @property
    def key(self) -> OpenPositionKey:
        return OpenPositionKey(self.symbol, self.action.direction)

    def notional(self, price: Optional[float] = None) -> float:
        """Requested notional in quote currency."""
        price = price or self.price_hint or 0.0
        if self.position_size_usd is not None and self.position_size_usd > 0:
            return self.position_size_usd
        if self.quantity_hint is not None and self.quantity_hint > 0:
            return self.quantity_hint * price
        return 0.0

    def quantity(self, price: Optional[float] = None) -> float:
        price = price or self.price_hint or 0.0
        if self.quantity_hint is not None and self.quantity_hint > 0:
            return self.quantity_hint
        if price > 0 and self.position_size_usd:
            return self.position_size_usd / price
        return 0.0


class CandidateDecision(BaseModel):
    """Oracle output: zero or more actions plus free-text rationale."""
    actions: List[CandidateAction] = Field(default_factory=list)
    rationale: str = ""
    parse_errors: List[str] = Field(default_factory=list)


class ExecutionResult(BaseModel):
    """Actual fill reported by the exchange - may differ from the request."""
    order_id: Optional[str] = None
    symbol: str
    action: ActionKind
    fill_price: float
    fill_quantity: float
    leverage: int = 1
    timestamp: datetime = Field(default_factory=utcnow)


class ExchangePosition(BaseModel):
    """Open position as perceived by the exchange."""
    symbol: str
    side: Direction
    quantity: float
    entry_price: float
    leverage: int = 1
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0

    model_config = ConfigDict(use_enum_values=False)

    @property
    def key(self) -> OpenPositionKey:
        return OpenPositionKey(self.symbol.upper(), self.side)


class AccountState(BaseModel):
    """Account as reported by the exchange."""
    equity: float
    available_balance: float
    unrealized_pnl: float = 0.0
    positions: List[ExchangePosition] = Field(default_factory=list)
    restricted: bool = False

    def snapshot(self) -> AccountSnapshot:
        margin = sum(p.quantity * p.entry_price / max(p.leverage, 1) for p in self.positions)
        return AccountSnapshot(
            equity=self.equity,
            available_balance=self.available_balance,
            unrealized_pnl=self.unrealized_pnl,
            margin_used=margin,
            position_count=len(self.positions),
        )


class MarketQuote(BaseModel):
    symbol: str
    price: float
    open_interest_usd: Optional[float] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Kline(BaseModel):
    open_time: int
    close_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


def _extract_json_array(text: str) -> Optional[str]:
    """Find the first balanced JSON array in free text."""
    start = text.find("[")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "[":
                depth += 1
            elif ch == "]":
                depth -= 1
                if depth == 0:
                    candidate = text[start:i + 1]
                    try:
                        json.loads(candidate)
                        return candidate
                    except json.JSONDecodeError:
                        break
        start = text.find("[", start + 1)
    return None


def _normalise_action_item(item: dict) -> dict:
    data = dict(item)
    if "price" in data and "price_hint" not in data:
        data["price_hint"] = data.pop("price")
    if "quantity" in data and "quantity_hint" not in data:
        data["quantity_hint"] = data.pop("quantity")
    if isinstance(data.get("action"), str):
        data["action"] = data["action"].strip().lower()
    if data.get("leverage") in (None, "", 0):
        data["leverage"] = 1
    return data


def parse_candidate_decision(raw: Any, rationale: str = "") -> CandidateDecision:
    """
    Parse oracle output into a CandidateDecision, never raising.

    Accepts free text containing a JSON array, a list of action dicts, or a
    dict with an "actions"/"decisions" list. Unparseable output degrades to
    no actions; a single malformed item is skipped and noted.
    """
    errors: List[str] = []
    items: Any = raw

    if isinstance(raw, str):
        text = raw
        if not rationale:
            cut = text.find("[")
            rationale = text[:cut].strip() if cut > 0 else ""
        payload = _extract_json_array(text)
        if payload is None:
            return CandidateDecision(
                rationale=rationale or text.strip(),
                parse_errors=["No JSON action array found in oracle response"],
            )
        items = json.loads(payload)

    if isinstance(items, dict):
        rationale = rationale or str(items.get("rationale") or items.get("reasoning") or "")
        items = items.get("actions", items.get("decisions", []))

    if not isinstance(items, list):
        return CandidateDecision(
            rationale=rationale,
            parse_errors=[f"Expected a list of actions, got {type(items).__name__}"],
        )

    actions: List[CandidateAction] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append(f"action[{index}]: not an object")
            continue
        kind = str(item.get("action", "")).strip().lower()
        if kind in NO_OP_ACTIONS:
            continue
        try:
            actions.append(CandidateAction(**_normalise_action_item(item)))
        except (ValidationError, TypeError) as e:
            errors.append(f"action[{index}]: {e.__class__.__name__}: {str(e).splitlines()[0]}")

    if errors:
        logger.warning(f"Dropped {len(errors)} malformed oracle actions: {errors}")

    return CandidateDecision(actions=actions, rationale=rationale, parse_errors=errors)
