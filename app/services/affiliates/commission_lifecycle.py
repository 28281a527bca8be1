"""
Commission Lifecycle State Machine

pending -> approved -> paid, with cancelled reachable from pending.
Paid and cancelled are terminal. Every transition is recorded in the
append-only commission event log.

Invalid transitions raise CommissionTransitionError; the caller never gets a
success response for a transition that did not happen.
"""
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from ...models.db_models import (
    AffiliateDB, CommissionDB, CommissionEventDB, CommissionStatus,
)


# =============================================================================
# ERRORS
# =============================================================================

class CommissionTransitionError(ValueError):
    """Requested transition is not allowed from the record's current status."""

    def __init__(self, message: str, current_status=None, requested_status=None):
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class CommissionNotFoundError(LookupError):
    pass


class ReferralNotFoundError(LookupError):
    pass


class ConcurrentModificationError(RuntimeError):
    """The affiliate or commission row changed under us; the write was rolled back."""


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

COMMISSION_STATE_CONFIG = {
    CommissionStatus.PENDING: {
        "description": "Commission recorded on conversion, awaiting admin review",
        "allowed_transitions": [CommissionStatus.APPROVED, CommissionStatus.CANCELLED],
        "counts_as_outstanding": True,
    },
    CommissionStatus.APPROVED: {
        "description": "Approved by an admin, awaiting payout",
        "allowed_transitions": [CommissionStatus.PAID],
        "counts_as_outstanding": True,
    },
    CommissionStatus.PAID: {
        "description": "Paid out to the affiliate",
        "allowed_transitions": [],  # Terminal state
        "counts_as_outstanding": False,
    },
    CommissionStatus.CANCELLED: {
        "description": "Voided before approval",
        "allowed_transitions": [],  # Terminal state
        "counts_as_outstanding": False,
    },
}

OUTSTANDING_STATUSES = tuple(
    state for state, config in COMMISSION_STATE_CONFIG.items() if config["counts_as_outstanding"]
)


def _value(status) -> str:
    return status.value if isinstance(status, CommissionStatus) else str(status)


# =============================================================================
# STATE MACHINE
# =============================================================================

class CommissionStateMachine:
    """
    Validates and applies commission status changes.

    Counter bookkeeping on the affiliate belongs to AffiliateService; this
    class only owns the status field, its timestamps and the event log.
    """

    def __init__(self, db_session):
        """Initialize with database session."""
        self.db = db_session

    def get_state_config(self, state: CommissionStatus) -> Dict[str, Any]:
        """Get configuration for a state."""
        return COMMISSION_STATE_CONFIG.get(state, {})

    def can_transition(
        self,
        from_state: CommissionStatus,
        to_state: CommissionStatus
    ) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        config = self.get_state_config(from_state)
        allowed_transitions = config.get("allowed_transitions", [])

        if to_state in allowed_transitions:
            return True, "Transition allowed"

        return False, f"Cannot transition commission from {_value(from_state)} to {_value(to_state)}"

    def transition(
        self,
        commission: CommissionDB,
        to_state: CommissionStatus,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CommissionEventDB:
        """
        Move a commission to a new status and log the event.

        Raises CommissionTransitionError when the move is not allowed.
        """
        from_state = commission.status

        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            raise CommissionTransitionError(reason, current_status=from_state, requested_status=to_state)

        now = datetime.utcnow()
        commission.status = to_state
        if to_state == CommissionStatus.APPROVED:
            commission.approved_at = now
            commission.approved_by = actor_id
        elif to_state == CommissionStatus.PAID:
            commission.paid_at = now
        elif to_state == CommissionStatus.CANCELLED:
            commission.cancelled_at = now

        return self.log_event(commission, from_state, to_state, actor_id, metadata)

    def log_event(
        self,
        commission: CommissionDB,
        from_state: Optional[CommissionStatus],
        to_state: CommissionStatus,
        actor_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CommissionEventDB:
        """Append an immutable event row for a commission."""
        event = CommissionEventDB(
            id=str(uuid4()),
            affiliate_id=commission.affiliate_id,
            commission_id=commission.id,
            from_status=from_state,
            to_status=to_state,
            actor_id=actor_id,
            amount=commission.commission_amount,
            event_metadata=metadata or {},
        )
        self.db.add(event)
        return event


def outstanding_amount(affiliate: AffiliateDB) -> float:
    """Sum of commission amounts not yet paid or cancelled."""
    return sum(
        c.commission_amount or 0.0
        for c in affiliate.commissions
        if c.status in OUTSTANDING_STATUSES
    )
