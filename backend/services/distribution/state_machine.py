"""
Distribution Hub - Distribution Workflow State Machine

Deterministic state machine for the distribution lifecycle:

    draft -> verified_by_sender -> sent -> received -> verified_by_receiver -> completed

The state machine is pure business logic with no HTTP or DB calls. It
decides whether an action is legal from the current status, which department
the acting user must belong to, and applies the status/timestamp/actor
changes to an aggregate copy handed in by the service layer. Committing the
copy (and the single history entry that goes with it) is the store's job.

Discrepancies are data on verified_by_receiver, not a separate status.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from services.distribution.errors import IllegalTransitionError, UnauthorizedError
from services.distribution.models import (
    Actor,
    Distribution,
    DistributionAction,
    DistributionStatus,
)

logger = logging.getLogger(__name__)


class Party(str, Enum):
    """Which side of the transfer must perform an action."""
    ORIGIN = "origin"
    DESTINATION = "destination"


# =============================================================================
# TRANSITION TABLE
# =============================================================================

# Format: {current_status: {action: next_status}}
DISTRIBUTION_TRANSITIONS: Dict[str, Dict[str, str]] = {
    DistributionStatus.DRAFT.value: {
        DistributionAction.VERIFY_SENDER.value: DistributionStatus.VERIFIED_BY_SENDER.value,
    },
    DistributionStatus.VERIFIED_BY_SENDER.value: {
        DistributionAction.SEND.value: DistributionStatus.SENT.value,
    },
    DistributionStatus.SENT.value: {
        DistributionAction.RECEIVE.value: DistributionStatus.RECEIVED.value,
    },
    DistributionStatus.RECEIVED.value: {
        DistributionAction.VERIFY_RECEIVER.value: DistributionStatus.VERIFIED_BY_RECEIVER.value,
    },
    DistributionStatus.VERIFIED_BY_RECEIVER.value: {
        DistributionAction.COMPLETE.value: DistributionStatus.COMPLETED.value,
    },
    DistributionStatus.COMPLETED.value: {},
}

ACTION_PARTY: Dict[str, Party] = {
    DistributionAction.VERIFY_SENDER.value: Party.ORIGIN,
    DistributionAction.SEND.value: Party.ORIGIN,
    DistributionAction.RECEIVE.value: Party.DESTINATION,
    DistributionAction.VERIFY_RECEIVER.value: Party.DESTINATION,
    DistributionAction.COMPLETE.value: Party.DESTINATION,
}

# Timestamp field stamped by the transition that reaches each status
STATUS_TIMESTAMP_FIELD: Dict[str, str] = {
    DistributionStatus.VERIFIED_BY_SENDER.value: "sender_verified_at",
    DistributionStatus.SENT.value: "sent_at",
    DistributionStatus.RECEIVED.value: "received_at",
    DistributionStatus.VERIFIED_BY_RECEIVER.value: "receiver_verified_at",
    DistributionStatus.COMPLETED.value: "completed_at",
}

# Actor field recorded by verification transitions
ACTION_ACTOR_FIELD: Dict[str, str] = {
    DistributionAction.VERIFY_SENDER.value: "sender_verifier",
    DistributionAction.VERIFY_RECEIVER.value: "receiver_verifier",
}

STATUS_ORDER: List[str] = [s.value for s in DistributionStatus]


def _value(item) -> Optional[str]:
    return item.value if isinstance(item, Enum) else item


class DistributionStateMachine:
    """
    Transition controller for distributions.

    All checks run before any mutation: an illegal or unauthorized request
    leaves the aggregate untouched.
    """

    @staticmethod
    def can_transition(
        current_status: Optional[str],
        action: str
    ) -> Tuple[bool, Optional[str], str]:
        """
        Check whether an action is valid from the given status.

        Returns:
            (can_transition, next_status, reason)
        """
        current_key = _value(current_status)
        action_key = _value(action)

        status_transitions = DISTRIBUTION_TRANSITIONS.get(current_key)
        if status_transitions is None:
            return (False, None, f"Unknown distribution status '{current_key}'")

        next_status = status_transitions.get(action_key)
        if next_status is None:
            valid_actions = list(status_transitions.keys())
            return (
                False,
                None,
                f"Action '{action_key}' not valid for status '{current_key}'. Valid: {valid_actions}",
            )

        return (True, next_status, "Transition allowed")

    @staticmethod
    def required_party(action: str) -> Party:
        return ACTION_PARTY[_value(action)]

    @staticmethod
    def required_department_id(distribution: Distribution, action: str) -> str:
        """Department whose members may perform the action on this distribution."""
        if DistributionStateMachine.required_party(action) == Party.ORIGIN:
            return distribution.origin_department_id
        return distribution.destination_department_id

    @staticmethod
    def is_actor_eligible(distribution: Distribution, action: str, actor: Actor) -> bool:
        required = DistributionStateMachine.required_department_id(distribution, action)
        return actor.department_id == required

    @staticmethod
    def ensure_allowed(distribution: Distribution, action: str, actor: Actor) -> DistributionStatus:
        """
        Validate status and actor eligibility for an action.

        Raises IllegalTransitionError or UnauthorizedError; returns the status
        the action leads to.
        """
        action_key = _value(action)
        current = _value(distribution.status)

        allowed, next_status, reason = DistributionStateMachine.can_transition(current, action_key)
        if not allowed:
            logger.warning(
                "Invalid distribution transition: id=%s, current=%s, action=%s, reason=%s",
                distribution.id, current, action_key, reason
            )
            raise IllegalTransitionError(reason, details={
                "distribution_id": distribution.id,
                "current_status": current,
                "action": action_key,
            })

        if not DistributionStateMachine.is_actor_eligible(distribution, action_key, actor):
            required = DistributionStateMachine.required_department_id(distribution, action_key)
            party = DistributionStateMachine.required_party(action_key).value
            logger.warning(
                "Unauthorized distribution action: id=%s, action=%s, actor=%s, actor_department=%s, required=%s",
                distribution.id, action_key, actor.id, actor.department_id, required
            )
            raise UnauthorizedError(
                f"Action '{action_key}' requires a member of the {party} department",
                details={
                    "distribution_id": distribution.id,
                    "action": action_key,
                    "required_department_id": required,
                    "actor_department_id": actor.department_id,
                },
            )

        return DistributionStatus(next_status)

    @staticmethod
    def apply(
        distribution: Distribution,
        action: str,
        actor: Actor,
        now: datetime
    ) -> Tuple[DistributionStatus, DistributionStatus]:
        """
        Apply a validated transition to an aggregate copy in place.

        Sets status, the timestamp of the reached status and, for verification
        actions, the verifier. Timestamps and verifiers are written once and
        never cleared.

        Returns:
            (from_status, to_status)
        """
        action_key = _value(action)
        from_status = DistributionStatus(distribution.status)
        to_status = DistributionStateMachine.ensure_allowed(distribution, action_key, actor)

        timestamp_field = STATUS_TIMESTAMP_FIELD[to_status.value]
        if getattr(distribution, timestamp_field) is not None:
            raise IllegalTransitionError(
                f"'{timestamp_field}' is already set on distribution {distribution.id}",
                details={"distribution_id": distribution.id, "field": timestamp_field},
            )
        setattr(distribution, timestamp_field, now)

        actor_field = ACTION_ACTOR_FIELD.get(action_key)
        if actor_field and getattr(distribution, actor_field) is None:
            setattr(distribution, actor_field, actor)

        distribution.status = to_status
        distribution.updated_at = now
        return (from_status, to_status)

    @staticmethod
    def get_next_action(status: str) -> Optional[DistributionAction]:
        transitions = DISTRIBUTION_TRANSITIONS.get(_value(status), {})
        for action in transitions:
            return DistributionAction(action)
        return None

    @staticmethod
    def available_actions(distribution: Distribution, actor: Actor) -> List[DistributionAction]:
        """Actions the actor may perform right now (drives workflow buttons)."""
        action = DistributionStateMachine.get_next_action(distribution.status)
        if action is None:
            return []
        if not DistributionStateMachine.is_actor_eligible(distribution, action, actor):
            return []
        return [action]

    @staticmethod
    def is_terminal(status: str) -> bool:
        return not DISTRIBUTION_TRANSITIONS.get(_value(status))

    @staticmethod
    def is_after(status: str, other: str) -> bool:
        """True when `status` comes later in the lifecycle than `other`."""
        return STATUS_ORDER.index(_value(status)) > STATUS_ORDER.index(_value(other))
