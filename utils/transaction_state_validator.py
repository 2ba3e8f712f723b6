"""
Transaction State Transition Validator
======================================

Single source of truth for TransactionRecord status transitions.
Prevents invalid transitions like COMPLETED -> PENDING or FAILED -> PROCESSING.
"""

import logging
from typing import Dict, Set, Tuple, Optional

from models import TransactionStatus

logger = logging.getLogger(__name__)


class TransactionStateValidator:
    """
    Validates TransactionRecord state transitions.

    Terminal states (completed, rejected, failed) never transition again;
    reopening a settled record is not supported.
    """

    VALID_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
        # PENDING: created, waiting for a decision or automatic processing
        TransactionStatus.PENDING: {
            TransactionStatus.APPROVED,
            TransactionStatus.REJECTED,
            TransactionStatus.PROCESSING,
            TransactionStatus.REQUIRES_MANUAL,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        },

        # APPROVED: admin approved, funds held until settled
        TransactionStatus.APPROVED: {
            TransactionStatus.PROCESSING,
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        },

        # PROCESSING: submitted to the payout provider
        TransactionStatus.PROCESSING: {
            TransactionStatus.COMPLETED,
            TransactionStatus.FAILED,
        },

        # REQUIRES_MANUAL: routed to an operator
        TransactionStatus.REQUIRES_MANUAL: {
            TransactionStatus.APPROVED,
            TransactionStatus.REJECTED,
            TransactionStatus.PROCESSING,
            TransactionStatus.FAILED,
        },

        TransactionStatus.COMPLETED: set(),
        TransactionStatus.REJECTED: set(),
        TransactionStatus.FAILED: set(),
    }

    TERMINAL_STATES: Set[TransactionStatus] = {
        TransactionStatus.COMPLETED,
        TransactionStatus.REJECTED,
        TransactionStatus.FAILED,
    }

    # Withdrawal funds are held (account.withdraw) while in these states
    FUNDS_HELD_STATES: Set[TransactionStatus] = {
        TransactionStatus.APPROVED,
        TransactionStatus.PROCESSING,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        transaction_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a state transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"Transaction {transaction_id}" if transaction_id else "Transaction"
        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())

        if to_status in valid_next_states:
            logger.debug(f"✅ VALID_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        if from_status in cls.TERMINAL_STATES:
            reason = f"Transaction already {from_status.value}"
        else:
            reason = (
                f"Invalid transition: {from_status.value} -> {to_status.value}. "
                f"Valid transitions from {from_status.value}: "
                f"{sorted(s.value for s in valid_next_states)}"
            )
        logger.warning(f"⚠️ INVALID_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
        return False, reason

    @classmethod
    def predecessors_of(cls, to_status: TransactionStatus) -> Set[TransactionStatus]:
        """All statuses from which to_status may be entered"""
        return {
            source for source, targets in cls.VALID_TRANSITIONS.items()
            if to_status in targets
        }

    @classmethod
    def get_valid_next_states(cls, current_status: TransactionStatus) -> Set[TransactionStatus]:
        return cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def is_terminal_state(cls, status: TransactionStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def has_funds_held(cls, status: TransactionStatus) -> bool:
        return status in cls.FUNDS_HELD_STATES
