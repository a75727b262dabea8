"""
Distribution Hub - History Recorder

Builds the append-only history entries written alongside every distribution
transition, verification submission and draft edit. Entries are frozen
models; the store appends them and never rewrites existing ones.
"""

from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

from services.distribution.models import (
    Actor,
    Discrepancy,
    Distribution,
    DistributionAction,
    DistributionStatus,
    HistoryAction,
    HistoryEntry,
    utc_now,
)

TRANSITION_HISTORY_ACTION: Dict[str, HistoryAction] = {
    DistributionAction.VERIFY_SENDER.value: HistoryAction.SENDER_VERIFIED,
    DistributionAction.SEND.value: HistoryAction.SENT,
    DistributionAction.RECEIVE.value: HistoryAction.RECEIVED,
    DistributionAction.VERIFY_RECEIVER.value: HistoryAction.RECEIVER_VERIFIED,
    DistributionAction.COMPLETE.value: HistoryAction.COMPLETED,
}


def describe_discrepancies(discrepancies: Sequence[Discrepancy]) -> str:
    parts = []
    for d in discrepancies:
        label = d.document_number or d.document_id
        parts.append(f"{d.document_type.value} {label} {d.status.value} ({d.notes})")
    return "; ".join(parts)


class HistoryRecorder:
    """Factory for history entries with a shared clock."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    def record(
        self,
        action: HistoryAction,
        description: str,
        actor: Optional[Actor] = None,
        notes: Optional[str] = None,
        from_status: Optional[DistributionStatus] = None,
        to_status: Optional[DistributionStatus] = None,
        metadata: Optional[Dict] = None,
        created_at: Optional[datetime] = None
    ) -> HistoryEntry:
        return HistoryEntry(
            action=action,
            description=description,
            created_at=created_at or self.now(),
            actor=actor,
            notes=notes,
            from_status=from_status,
            to_status=to_status,
            metadata=metadata or {},
        )

    def for_transition(
        self,
        distribution: Distribution,
        action: DistributionAction,
        actor: Actor,
        from_status: DistributionStatus,
        to_status: DistributionStatus,
        notes: Optional[str] = None,
        discrepancies: Sequence[Discrepancy] = (),
        created_at: Optional[datetime] = None
    ) -> HistoryEntry:
        """Entry for one lifecycle transition. Forced discrepancies are spelled out in the description."""
        action_key = DistributionAction(action).value
        history_action = TRANSITION_HISTORY_ACTION[action_key]
        who = actor.name or actor.id
        number = distribution.distribution_number
        count = len(distribution.documents)
        metadata: Dict = {"document_count": count}

        if action_key == DistributionAction.VERIFY_SENDER.value:
            description = f"{count} document(s) of distribution {number} verified by sender {who}"
        elif action_key == DistributionAction.SEND.value:
            description = f"Distribution {number} sent by {who}"
        elif action_key == DistributionAction.RECEIVE.value:
            description = f"Distribution {number} received by {who}"
        elif action_key == DistributionAction.VERIFY_RECEIVER.value:
            if discrepancies:
                history_action = HistoryAction.RECEIVER_VERIFIED_WITH_DISCREPANCIES
                description = (
                    f"{count} document(s) of distribution {number} verified by receiver {who} "
                    f"with {len(discrepancies)} discrepancy(ies): {describe_discrepancies(discrepancies)}"
                )
                metadata["discrepancies"] = [d.model_dump(mode="json") for d in discrepancies]
            else:
                description = f"{count} document(s) of distribution {number} verified by receiver {who}"
        else:
            description = f"Distribution {number} completed by {who}"

        return self.record(
            action=history_action,
            description=description,
            actor=actor,
            notes=notes,
            from_status=from_status,
            to_status=to_status,
            metadata=metadata,
            created_at=created_at,
        )


def timeline(entries: Iterable[HistoryEntry]) -> Tuple[HistoryEntry, ...]:
    """Entries in creation order. Insertion order breaks timestamp ties."""
    indexed = list(enumerate(entries))
    indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]))
    return tuple(entry for _, entry in indexed)
