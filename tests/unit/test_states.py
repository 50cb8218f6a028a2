"""
test_states.py - Status enums and transition tables

Tests the lifecycles:
  request      pending -> matched -> in_progress -> completed
  match        proposed -> accepted -> completed | cancelled
  transaction  pending -> escrowed -> (verified) -> settled | refunded

Validates:
 - All legal transitions
 - Illegal transitions are rejected with Conflict
 - SQL guard sources agree with the tables
 - Terminal states and input parsing
"""

import pytest

from marketplace.errors import Conflict, InvalidInput
from marketplace.states import (
    MATCH_TRANSITIONS, TERMINAL, TRANSACTION_TRANSITIONS,
    AgentType, MatchStatus, RequestStatus, TransactionStatus,
    is_terminal, parse, sources, transition,
)


class TestLegalTransitions:

    @pytest.mark.parametrize("current,event,expected", [
        ("pending", "match", "matched"),
        ("matched", "match", "matched"),
        ("matched", "accept", "in_progress"),
        ("in_progress", "complete", "completed"),
        ("matched", "revert", "pending"),
        ("pending", "cancel", "cancelled"),
        ("matched", "cancel", "cancelled"),
    ])
    def test_request(self, current, event, expected):
        assert transition(RequestStatus, current, event) == RequestStatus(expected)

    @pytest.mark.parametrize("current,event,expected", [
        ("proposed", "accept", "accepted"),
        ("accepted", "complete", "completed"),
        ("accepted", "approve", "completed"),
        ("completed", "approve", "completed"),
        ("proposed", "cancel", "cancelled"),
        ("accepted", "cancel", "cancelled"),
    ])
    def test_match(self, current, event, expected):
        assert transition(MatchStatus, current, event) == MatchStatus(expected)

    @pytest.mark.parametrize("current,event,expected", [
        ("pending", "escrow", "escrowed"),
        ("escrowed", "verify", "verified"),
        ("escrowed", "settle", "settled"),
        ("verified", "settle", "settled"),
        ("escrowed", "refund", "refunded"),
        ("verified", "refund", "refunded"),
        ("pending", "fail", "failed"),
    ])
    def test_transaction(self, current, event, expected):
        assert transition(TransactionStatus, current, event) == TransactionStatus(expected)


class TestIllegalTransitions:

    @pytest.mark.parametrize("current", ["accepted", "completed", "cancelled", "failed"])
    def test_accept_only_from_proposed(self, current):
        with pytest.raises(Conflict) as exc:
            transition(MatchStatus, current, "accept", "m-1")
        assert exc.value.entity_id == "m-1"
        assert exc.value.expected == "proposed"
        assert exc.value.actual == current

    def test_complete_requires_accepted(self):
        with pytest.raises(Conflict):
            transition(MatchStatus, "proposed", "complete")

    def test_pending_transaction_cannot_settle(self):
        # settling must pass through escrow
        with pytest.raises(Conflict):
            transition(TransactionStatus, "pending", "settle")

    def test_settled_cannot_be_refunded(self):
        with pytest.raises(Conflict):
            transition(TransactionStatus, "settled", "refund")

    def test_in_progress_request_cannot_be_cancelled(self):
        with pytest.raises(Conflict):
            transition(RequestStatus, "in_progress", "cancel")

    def test_unknown_event_is_a_programming_error(self):
        with pytest.raises(ValueError):
            transition(MatchStatus, "proposed", "teleport")


class TestTablesAndHelpers:

    def test_sources_match_table_keys(self):
        for event, table in MATCH_TRANSITIONS.items():
            assert set(sources(MatchStatus, event)) == {s.value for s in table}
        for event, table in TRANSACTION_TRANSITIONS.items():
            assert set(sources(TransactionStatus, event)) == {s.value for s in table}

    def test_no_transition_leaves_a_terminal_state(self):
        # "approve" on a completed match is the one idempotent exception
        for event, table in TRANSACTION_TRANSITIONS.items():
            for src in table:
                assert src not in TERMINAL[TransactionStatus], (event, src)
        for event, table in MATCH_TRANSITIONS.items():
            for src, dst in table.items():
                if src in TERMINAL[MatchStatus]:
                    assert src == dst, (event, src)

    def test_is_terminal(self):
        assert is_terminal(TransactionStatus, "settled")
        assert is_terminal(RequestStatus, "cancelled")
        assert not is_terminal(MatchStatus, "accepted")

    def test_parse_accepts_known_values(self):
        assert parse(AgentType, "both", field="type") is AgentType.BOTH

    def test_parse_rejects_junk(self):
        with pytest.raises(InvalidInput) as exc:
            parse(MatchStatus, "exploded")
        assert "proposed" in exc.value.message
