"""
PositionLedger - open positions plus the append-only action log.

Every accepted action is stored once as an immutable TradeAction inside a
DecisionRecord. Closing actions are matched against the open slot for the
same (symbol, direction) key and get their P&L attached before storing.
The same matching function replays the log for read projections, so any
closed trade can be reconstructed from the records alone.
"""
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import InvalidActionKind
from .locks import ReadWriteLock
from .logger import DecisionLogger
from .schemas import (
    AccountSnapshot,
    ActionKind,
    ClosedTrade,
    DecisionRecord,
    Direction,
    OpenPositionKey,
    OpenPositionSnapshot,
    RuleRejection,
    TradeAction,
    TradeEvent,
    ensure_utc,
    side_from_action,
)

logger = logging.getLogger("arena_trader.ledger")

# Closed trades kept in memory for performance snapshots.
DEFAULT_CLOSED_WINDOW = 500


@dataclass
class MatchResult:
    """Outcome of applying one action to an open-position map."""
    action: Optional[TradeAction]
    closed: Optional[ClosedTrade] = None

    @property
    def skipped(self) -> bool:
        return self.action is None


def format_duration(seconds: float) -> str:
    return str(timedelta(seconds=round(seconds)))


def realized_pnl(side: Direction, quantity: float, entry_price: float, exit_price: float) -> float:
    if side == Direction.LONG:
        return quantity * (exit_price - entry_price)
    return quantity * (entry_price - exit_price)


def match_action(
    open_positions: Dict[OpenPositionKey, OpenPositionSnapshot],
    action: TradeAction,
    fallback_time: datetime,
) -> MatchResult:
    """
    Apply one action to the open-position map (mutated in place).

    Opens with non-positive quantity are skipped. Closes are matched by
    (symbol, direction); a match attaches P&L, P&L % of margin and holding
    time and always clears the slot. A close with no open slot is kept as
    an orphan with the derived fields absent.
    """
    kind = action.kind
    key = OpenPositionKey(action.symbol.upper(), kind.direction)
    ts = ensure_utc(action.timestamp or fallback_time)

    if kind.is_open:
        if action.quantity <= 0:
            logger.warning(f"Skipping {kind.value} {action.symbol}: non-positive quantity {action.quantity}")
            return MatchResult(action=None)
        if key in open_positions:
            logger.warning(f"Overwriting stale open position for {key.label}")
        open_positions[key] = OpenPositionSnapshot(
            price=action.price,
            quantity=action.quantity,
            leverage=max(action.leverage, 1),
            timestamp=ts,
        )
        return MatchResult(action=action.model_copy(update={"timestamp": ts}))

    open_pos = open_positions.get(key)
    if open_pos is None:
        orphan = action.model_copy(update={
            "timestamp": ts,
            "pnl": None,
            "pnl_pct": None,
            "duration_seconds": None,
        })
        return MatchResult(action=orphan)

    quantity = action.quantity if action.quantity > 0 else open_pos.quantity
    margin_used = open_pos.margin_used
    pnl = realized_pnl(key.side, open_pos.quantity, open_pos.price, action.price)
    pnl_pct = (pnl / margin_used) * 100 if margin_used > 0 else 0.0
    duration = float(round((ts - open_pos.timestamp).total_seconds()))
    del open_positions[key]

    stored = action.model_copy(update={
        "timestamp": ts,
        "quantity": quantity,
        "pnl": pnl,
        "pnl_pct": pnl_pct,
        "duration_seconds": duration,
    })
    closed = ClosedTrade(
        symbol=key.symbol,
        side=key.side,
        entry_price=open_pos.price,
        exit_price=action.price,
        quantity=open_pos.quantity,
        leverage=open_pos.leverage,
        entry_time=open_pos.timestamp,
        exit_time=ts,
        pnl=pnl,
        pnl_pct=pnl_pct,
        margin_used=margin_used,
        duration_seconds=duration,
    )
    return MatchResult(action=stored, closed=closed)


def _iter_matches(
    records: Iterable[DecisionRecord],
    symbol: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
):
    """Replay records in order, yielding (record, MatchResult) inside the window."""
    wanted = symbol.upper() if symbol else None
    start = ensure_utc(start) if start else None
    end = ensure_utc(end) if end else None
    open_positions: Dict[OpenPositionKey, OpenPositionSnapshot] = {}

    for record in records:
        for action in record.actions:
            if wanted and action.symbol.upper() != wanted:
                continue
            if side_from_action(action.action) is None:
                logger.debug(f"Ignoring unrecognised action {action.action!r} in cycle {record.cycle_number}")
                continue

            action_time = ensure_utc(action.timestamp or record.timestamp)
            if start and action_time < start:
                continue
            if end and action_time > end:
                continue

            result = match_action(open_positions, action, record.timestamp)
            if not result.skipped:
                yield record, result


def build_trade_events(
    records: Iterable[DecisionRecord],
    symbol: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[TradeEvent]:
    """Project the action log into trade events, filtering before matching."""
    events = []
    for record, result in _iter_matches(records, symbol, start, end):
        action = result.action
        events.append(TradeEvent(
            symbol=action.symbol,
            side=action.side,
            action=action.action,
            timestamp=action.timestamp,
            price=action.price,
            quantity=action.quantity,
            leverage=action.leverage,
            confidence=action.confidence,
            cycle_number=record.cycle_number,
            pnl=action.pnl,
            pnl_pct=action.pnl_pct,
            duration=format_duration(action.duration_seconds) if action.duration_seconds is not None else None,
            duration_seconds=action.duration_seconds,
        ))
    return events


def build_closed_trades(
    records: Iterable[DecisionRecord],
    symbol: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[ClosedTrade]:
    return [r.closed for _, r in _iter_matches(records, symbol, start, end) if r.closed is not None]


class PositionLedger:
    """
    Per-agent ledger of open positions and DecisionRecords.

    Appends are serialized behind the write lock and applied to a working
    copy of the open-position map that only replaces the live map once the
    whole batch (and its persistence) succeeded. Every read returns copies.
    """

    def __init__(
        self,
        agent_id: str,
        universe: Optional[Iterable[str]] = None,
        store: Optional[DecisionLogger] = None,
        closed_window: int = DEFAULT_CLOSED_WINDOW,
    ):
        self.agent_id = agent_id
        self.universe = frozenset(s.upper() for s in universe) if universe else None
        self._store = store
        self._lock = ReadWriteLock()
        self._records: List[DecisionRecord] = []
        self._open: Dict[OpenPositionKey, OpenPositionSnapshot] = {}
        self._recent_closed: deque = deque(maxlen=max(closed_window, 1))
        self._last_cycle = 0

        if store is not None:
            self._replay(store.load())

    def _replay(self, records: Sequence[DecisionRecord]):
        for record in records:
            for action in record.actions:
                try:
                    result = match_action(self._open, action, record.timestamp)
                except InvalidActionKind as e:
                    logger.warning(f"[{self.agent_id}] Skipping persisted action: {e}")
                    continue
                if result.closed is not None:
                    self._recent_closed.append(result.closed)
            self._records.append(record)
            self._last_cycle = max(self._last_cycle, record.cycle_number)
        if records:
            logger.info(
                f"[{self.agent_id}] Replayed {len(records)} records, "
                f"{len(self._open)} open positions, last cycle #{self._last_cycle}"
            )

    def append(
        self,
        cycle_number: int,
        timestamp: datetime,
        actions: Sequence[TradeAction],
        rationale: str = "",
        notes: Optional[List[str]] = None,
        rejections: Optional[List[RuleRejection]] = None,
        account: Optional[AccountSnapshot] = None,
        success: bool = True,
        error: Optional[str] = None,
    ) -> DecisionRecord:
        """
        Append one cycle's executed actions as a single DecisionRecord.

        Actions with an unrecognised kind or on symbols outside the tracked
        universe are logged, noted on the record and left out; the rest of
        the batch is kept.
        """
        timestamp = ensure_utc(timestamp)
        notes = list(notes or [])
        ordered = sorted(actions, key=lambda a: ensure_utc(a.timestamp or timestamp))

        with self._lock.write_locked():
            working = dict(self._open)
            stored: List[TradeAction] = []
            closed: List[ClosedTrade] = []
            for action in ordered:
                try:
                    ActionKind.parse(action.action)
                except InvalidActionKind as e:
                    logger.warning(f"[{self.agent_id}] Skipping action: {e}")
                    notes.append(f"skipped {action.action} {action.symbol}: invalid action kind")
                    continue
                if self.universe is not None and action.symbol.upper() not in self.universe:
                    logger.warning(f"[{self.agent_id}] Ignoring {action.action} on untracked symbol {action.symbol}")
                    notes.append(f"ignored {action.action} {action.symbol}: symbol not tracked")
                    continue
                if action.cycle_number != cycle_number:
                    action = action.model_copy(update={"cycle_number": cycle_number})
                result = match_action(working, action, timestamp)
                if result.skipped:
                    notes.append(f"skipped {action.action} {action.symbol}: non-positive quantity")
                    continue
                stored.append(result.action)
                if result.closed is not None:
                    closed.append(result.closed)
                    logger.info(
                        f"[{self.agent_id}] Closed {result.closed.symbol} {result.closed.side} "
                        f"P&L ${result.closed.pnl:.2f} ({result.closed.pnl_pct:.2f}%)"
                    )

            record = DecisionRecord(
                agent_id=self.agent_id,
                cycle_number=cycle_number,
                timestamp=timestamp,
                actions=stored,
                rationale=rationale,
                notes=notes,
                rejections=list(rejections or []),
                account=account,
                success=success,
                error=error,
            )
            if self._store is not None:
                self._store.write(record)

            self._open = working
            self._records.append(record)
            self._recent_closed.extend(closed)
            self._last_cycle = max(self._last_cycle, cycle_number)

        return record.model_copy(deep=True)

    @property
    def last_cycle_number(self) -> int:
        with self._lock.read_locked():
            return self._last_cycle

    def record_count(self) -> int:
        with self._lock.read_locked():
            return len(self._records)

    def latest_records(self, n: int) -> List[DecisionRecord]:
        """The n most recent records, oldest first."""
        if n <= 0:
            return []
        with self._lock.read_locked():
            recent = self._records[-n:]
        return [r.model_copy(deep=True) for r in recent]

    def all_records(self) -> List[DecisionRecord]:
        with self._lock.read_locked():
            records = list(self._records)
        return [r.model_copy(deep=True) for r in records]

    def records_since(self, since: datetime) -> List[DecisionRecord]:
        since = ensure_utc(since)
        with self._lock.read_locked():
            records = [r for r in self._records if ensure_utc(r.timestamp) >= since]
        return [r.model_copy(deep=True) for r in records]

    def open_positions(self) -> Dict[OpenPositionKey, OpenPositionSnapshot]:
        """Copy of the open-position map; snapshots are frozen."""
        with self._lock.read_locked():
            return dict(self._open)

    def margin_in_use(self) -> float:
        with self._lock.read_locked():
            return sum(p.margin_used for p in self._open.values())

    def trade_events(
        self,
        symbol: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        lookback: Optional[int] = None,
    ) -> List[TradeEvent]:
        """Trade events filtered by symbol and [start, end], newest `limit` kept."""
        records = self.latest_records(lookback) if lookback else self.all_records()
        events = build_trade_events(records, symbol, start, end)
        if limit and len(events) > limit:
            events = events[-limit:]
        return events

    def closed_trades(
        self,
        symbol: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[ClosedTrade]:
        trades = build_closed_trades(self.all_records(), symbol, start, end)
        if limit and len(trades) > limit:
            trades = trades[-limit:]
        return trades

    def recent_closed_trades(self, n: Optional[int] = None) -> List[ClosedTrade]:
        """
        The most recent closed trades, oldest first, without replaying the log.

        Bounded by the ledger's closed window; `n` narrows it further.
        """
        with self._lock.read_locked():
            trades = list(self._recent_closed)
        if n is not None:
            trades = trades[-n:] if n > 0 else []
        return [t.model_copy(deep=True) for t in trades]

    def statistics(self) -> dict:
        with self._lock.read_locked():
            records = list(self._records)
        opens = closes = 0
        for record in records:
            for action in record.actions:
                if action.action.startswith("open_"):
                    opens += 1
                elif action.action.startswith("close_"):
                    closes += 1
        successful = sum(1 for r in records if r.success)
        return {
            "total_cycles": len(records),
            "successful_cycles": successful,
            "failed_cycles": len(records) - successful,
            "total_open_positions": opens,
            "total_close_positions": closes,
        }

    def equity_history(self, limit: Optional[int] = None) -> List[dict]:
        with self._lock.read_locked():
            records = [r for r in self._records if r.account is not None]
        if limit:
            records = records[-limit:]
        return [
            {
                "timestamp": r.timestamp.isoformat(),
                "cycle_number": r.cycle_number,
                "total_equity": r.account.equity,
                "available_balance": r.account.available_balance,
                "total_pnl": r.account.unrealized_pnl,
                "position_count": r.account.position_count,
                "margin_used": r.account.margin_used,
            }
            for r in records
        ]
