"""
Payment Record State Machine
Forward-only status transitions and the user-facing display vocabulary
"""

import logging
from enum import Enum
from typing import Dict, Optional, Set

from models import PaymentStatus

logger = logging.getLogger(__name__)


class TransitionOutcome(Enum):
    """What happened when a reported status was applied to a record"""
    APPLIED = "applied"
    UNCHANGED = "unchanged"  # same internal status, possibly a different provider-native one
    IGNORED = "ignored"  # would move the record backward or out of a terminal state


class PaymentStateValidator:
    """Validates payment status transitions and prevents regressions"""

    VALID_TRANSITIONS: Dict[Optional[str], Set[str]] = {
        None: {PaymentStatus.CREATED.value},
        PaymentStatus.CREATED.value: {
            PaymentStatus.PROCESSING.value,
            PaymentStatus.SUCCEEDED.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.CANCELED.value,
            PaymentStatus.EXPIRED.value,
        },
        PaymentStatus.PROCESSING.value: {
            PaymentStatus.SUCCEEDED.value,
            PaymentStatus.FAILED.value,
            PaymentStatus.CANCELED.value,
            PaymentStatus.EXPIRED.value,
        },
        # A declined card attempt leaves the intent payable; money the provider confirms is never ignored
        PaymentStatus.FAILED.value: {
            PaymentStatus.PROCESSING.value,
            PaymentStatus.SUCCEEDED.value,
        },
        PaymentStatus.SUCCEEDED.value: {PaymentStatus.REFUNDED.value},
        PaymentStatus.CANCELED.value: set(),
        PaymentStatus.EXPIRED.value: set(),
        PaymentStatus.REFUNDED.value: set(),
    }

    NON_TERMINAL_STATUSES = (PaymentStatus.CREATED.value, PaymentStatus.PROCESSING.value)

    # Collapsed vocabulary for purchaser-facing screens
    DISPLAY_STATUS = {
        PaymentStatus.CREATED.value: "pending",
        PaymentStatus.PROCESSING.value: "processing",
        PaymentStatus.SUCCEEDED.value: "succeeded",
        PaymentStatus.FAILED.value: "failed",
        PaymentStatus.CANCELED.value: "canceled",
        PaymentStatus.EXPIRED.value: "expired",
        PaymentStatus.REFUNDED.value: "refunded",
    }

    @classmethod
    def is_valid_transition(cls, current_status: Optional[str], new_status: str) -> bool:
        return new_status in cls.VALID_TRANSITIONS.get(current_status, set())

    @classmethod
    def evaluate(cls, current_status: Optional[str], new_status: str) -> TransitionOutcome:
        if current_status == new_status:
            return TransitionOutcome.UNCHANGED
        if cls.is_valid_transition(current_status, new_status):
            return TransitionOutcome.APPLIED
        return TransitionOutcome.IGNORED

    @classmethod
    def is_terminal(cls, status: str, tokens_added: bool = False) -> bool:
        """
        Terminal for reconciliation: no further crediting can happen.

        `succeeded` only counts once the tokens are credited; a scheduled or
        failed-to-credit record still needs the release sweep.
        """
        if status == PaymentStatus.SUCCEEDED.value:
            return tokens_added
        return status not in cls.NON_TERMINAL_STATUSES

    @classmethod
    def display_status(cls, status: str) -> str:
        return cls.DISPLAY_STATUS.get(status, "pending")
