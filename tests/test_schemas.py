"""
Tests for oracle output parsing and schema helpers.
"""
import pytest

from arena_trader.errors import InvalidActionKind
from arena_trader.schemas import (
    AccountState,
    ActionKind,
    CandidateAction,
    Direction,
    ExchangePosition,
    ensure_utc,
    parse_candidate_decision,
    side_from_action,
)

from conftest import T0

ORACLE_TEXT = (
    "Momentum is strong on BTC, ETH is ranging.\n"
    '[{"symbol": "btcusdt", "action": "open_long", "price": 60000, "leverage": 10, '
    '"position_size_usd": 6000, "stop_loss": 59000, "take_profit": 63000, "confidence": 0.85}, '
    '{"symbol": "ETHUSDT", "action": "hold"}]'
)


class TestParseCandidateDecision:
    """Test tolerant parsing of oracle output."""

    def test_text_with_rationale_and_array(self):
        decision = parse_candidate_decision(ORACLE_TEXT)

        assert decision.rationale == "Momentum is strong on BTC, ETH is ranging."
        assert decision.parse_errors == []
        assert len(decision.actions) == 1

        action = decision.actions[0]
        assert action.symbol == "BTCUSDT"
        assert action.action == ActionKind.OPEN_LONG
        assert action.price_hint == 60000
        assert action.leverage == 10
        assert action.confidence == 85

    def test_malformed_item_is_skipped_and_noted(self):
        raw = [
            {"symbol": "BTCUSDT", "action": "buy"},
            {"symbol": "SOLUSDT", "action": "open_short", "quantity": 5},
        ]
        decision = parse_candidate_decision(raw)

        assert [a.symbol for a in decision.actions] == ["SOLUSDT"]
        assert decision.actions[0].quantity_hint == 5
        assert len(decision.parse_errors) == 1
        assert decision.parse_errors[0].startswith("action[0]")

    def test_text_without_json_degrades_to_no_actions(self):
        decision = parse_candidate_decision("I would wait for a better entry.")

        assert decision.actions == []
        assert decision.rationale == "I would wait for a better entry."
        assert decision.parse_errors

    def test_dict_with_decisions_key(self):
        decision = parse_candidate_decision({
            "reasoning": "close the winner",
            "decisions": [{"symbol": "BTCUSDT", "action": "CLOSE_LONG"}],
        })

        assert decision.rationale == "close the winner"
        assert decision.actions[0].action == ActionKind.CLOSE_LONG

    def test_non_list_payload(self):
        decision = parse_candidate_decision({"actions": "open everything"})
        assert decision.actions == []
        assert "Expected a list" in decision.parse_errors[0]

    def test_non_object_item(self):
        decision = parse_candidate_decision(["open_long BTC"])
        assert decision.parse_errors == ["action[0]: not an object"]

    def test_missing_leverage_defaults_to_one(self):
        decision = parse_candidate_decision([{"symbol": "BTCUSDT", "action": "open_long", "leverage": None}])
        assert decision.actions[0].leverage == 1


class TestActionKind:
    """Test action kind parsing and helpers."""

    def test_parse_is_case_insensitive(self):
        assert ActionKind.parse(" Open_Short ") == ActionKind.OPEN_SHORT

    def test_parse_rejects_unknown(self):
        with pytest.raises(InvalidActionKind) as exc_info:
            ActionKind.parse("buy")
        assert exc_info.value.kind == "buy"

    def test_direction_and_kind(self):
        assert ActionKind.CLOSE_SHORT.direction == Direction.SHORT
        assert ActionKind.CLOSE_SHORT.is_close
        assert not ActionKind.OPEN_LONG.is_close

    def test_side_from_action(self):
        assert side_from_action("close_long") == Direction.LONG
        assert side_from_action("hold") is None


class TestCandidateAction:
    """Test sizing helpers on candidate actions."""

    def test_notional_from_size(self):
        action = CandidateAction(symbol="BTCUSDT", action="open_long", position_size_usd=6000)
        assert action.notional(60000) == 6000
        assert action.quantity(60000) == pytest.approx(0.1)

    def test_notional_from_quantity(self):
        action = CandidateAction(symbol="BTCUSDT", action="open_long", quantity_hint=0.2)
        assert action.notional(50000) == pytest.approx(10000)

    def test_confidence_out_of_range_rejected(self):
        with pytest.raises(Exception):
            CandidateAction(symbol="BTCUSDT", action="open_long", confidence=150)


class TestAccountState:

    def test_snapshot_margin(self):
        account = AccountState(
            equity=1000.0,
            available_balance=400.0,
            positions=[ExchangePosition(symbol="BTCUSDT", side="long", quantity=0.1, entry_price=60000, leverage=10)],
        )
        snapshot = account.snapshot()
        assert snapshot.margin_used == pytest.approx(600.0)
        assert snapshot.position_count == 1

    def test_ensure_utc_on_naive(self):
        assert ensure_utc(T0.replace(tzinfo=None)) == T0
