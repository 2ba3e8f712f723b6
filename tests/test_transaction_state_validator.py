"""
Tests for the TransactionRecord transition table
"""

import pytest

from models import TransactionRecord, TransactionStatus as S
from utils.transaction_state_validator import TransactionStateValidator as V


class TestTransitions:

    @pytest.mark.parametrize("source,target", [
        (S.PENDING, S.APPROVED),
        (S.PENDING, S.REQUIRES_MANUAL),
        (S.APPROVED, S.COMPLETED),
        (S.APPROVED, S.FAILED),
        (S.PROCESSING, S.COMPLETED),
        (S.REQUIRES_MANUAL, S.PROCESSING),
        (S.REQUIRES_MANUAL, S.REJECTED),
    ])
    def test_allowed(self, source, target):
        assert V.validate_transition(source, target) == (True, "Valid state transition")

    @pytest.mark.parametrize("terminal", [S.COMPLETED, S.REJECTED, S.FAILED])
    def test_terminal_states_never_move(self, terminal):
        assert V.is_terminal_state(terminal)
        assert V.get_valid_next_states(terminal) == set()

        valid, reason = V.validate_transition(terminal, S.PENDING, transaction_id=12)

        assert valid is False
        assert reason == f"Transaction already {terminal.value}"

    def test_invalid_non_terminal_lists_options(self):
        valid, reason = V.validate_transition(S.PROCESSING, S.APPROVED)

        assert valid is False
        assert reason.startswith("Invalid transition: processing -> approved.")
        assert "['completed', 'failed']" in reason

    def test_predecessors(self):
        assert V.predecessors_of(S.REJECTED) == {S.PENDING, S.REQUIRES_MANUAL}
        assert V.predecessors_of(S.PENDING) == set()

    def test_requires_manual_unreachable_from_terminal(self):
        assert V.predecessors_of(S.REQUIRES_MANUAL) == {S.PENDING}

    def test_funds_held_states(self):
        assert V.has_funds_held(S.APPROVED)
        assert V.has_funds_held(S.PROCESSING)
        assert not V.has_funds_held(S.PENDING)

    def test_record_exposes_status_enum(self):
        assert TransactionRecord(status="requires_manual").transaction_status is S.REQUIRES_MANUAL
