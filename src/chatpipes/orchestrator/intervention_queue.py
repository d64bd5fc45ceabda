"""
Pending operator interventions.

Interventions are ordered by priority (high before medium before low) and then
by arrival. The sequence counter is shared by every item in the queue, so FIFO
order holds across priorities and targets. A queue may be shared by several
conversations; each caller can restrict lookups to the ids it owns.
"""

import itertools
import logging
from typing import Any, Collection, Dict, List, Optional, Tuple
from uuid import UUID

from chatpipes.protocol.models import (
    ALL_TARGET,
    Intervention,
    InterventionKind,
    InterventionPriority,
    utcnow
)


class InterventionQueue:
    """
    Priority-then-FIFO queue of interventions.

    Every intervention id can be enqueued once and leaves the queue exactly
    once, either applied (``applied_at`` is stamped) or discarded.
    """

    def __init__(self):
        """Initialize an empty queue."""
        self._pending: Dict[UUID, Tuple[int, int, Intervention]] = {}
        self._applied: Dict[UUID, Intervention] = {}
        self._discarded: Dict[UUID, Intervention] = {}
        self._sequence = itertools.count()
        self.logger = logging.getLogger("chatpipes.orchestrator.interventions")

    def __len__(self) -> int:
        return len(self._pending)

    def enqueue(self, intervention: Intervention) -> Intervention:
        """
        Add an intervention.

        Raises:
            ValueError: If the id was already enqueued
        """
        if intervention.id in self._pending or intervention.id in self._applied or intervention.id in self._discarded:
            raise ValueError(f"Intervention {intervention.id} was already enqueued")
        if intervention.applied:
            raise ValueError(f"Intervention {intervention.id} was already applied")

        self._pending[intervention.id] = (intervention.priority.rank, next(self._sequence), intervention)
        self.logger.debug(
            f"Queued {intervention.kind.value} intervention {intervention.id} "
            f"for {intervention.target} ({intervention.priority.value})"
        )
        return intervention

    def _ordered(self, among: Optional[Collection[UUID]] = None) -> List[Intervention]:
        entries = sorted(self._pending.values(), key=lambda entry: (entry[0], entry[1]))
        interventions = [entry[2] for entry in entries]
        if among is not None:
            interventions = [i for i in interventions if i.id in among]
        return interventions

    def _mark_applied(self, intervention: Intervention) -> Intervention:
        del self._pending[intervention.id]
        intervention.applied_at = utcnow()
        self._applied[intervention.id] = intervention
        return intervention

    def pop(self, target_id: str, among: Optional[Collection[UUID]] = None) -> Optional[Intervention]:
        """
        Remove and return the best pending prompt intervention for a participant.

        Interventions addressed to other participants stay queued.

        Args:
            target_id: The participant about to speak
            among: Only consider these intervention ids

        Returns:
            The applied intervention, or None if nothing is due
        """
        for intervention in self._ordered(among):
            if intervention.kind.is_control:
                continue
            if intervention.targets(target_id):
                return self._mark_applied(intervention)
        return None

    def pop_control(
        self,
        target_id: str,
        among: Optional[Collection[UUID]] = None,
        kinds: Optional[Collection[InterventionKind]] = None
    ) -> Optional[Intervention]:
        """
        Remove and return the best pending pause or resume for a participant.

        Args:
            target_id: The participant about to speak
            among: Only consider these intervention ids
            kinds: Only consider these control kinds

        Returns:
            The applied intervention, or None if nothing is due
        """
        for intervention in self._ordered(among):
            if not intervention.kind.is_control:
                continue
            if kinds is not None and intervention.kind not in kinds:
                continue
            if intervention.targets(target_id):
                return self._mark_applied(intervention)
        return None

    def pop_by_id(self, intervention_id: UUID) -> Optional[Intervention]:
        """Remove, stamp and return a specific pending intervention."""
        entry = self._pending.get(intervention_id)
        if entry is None:
            return None
        return self._mark_applied(entry[2])

    def peek_direction(
        self,
        participant_ids: Collection[str],
        among: Optional[Collection[UUID]] = None
    ) -> Optional[Intervention]:
        """
        Find the best pending direction that names a specific participant.

        Args:
            participant_ids: Participants that may be named
            among: Only consider these intervention ids

        Returns:
            The intervention (still pending), or None
        """
        for intervention in self._ordered(among):
            if (
                intervention.kind == InterventionKind.DIRECTION
                and intervention.target != ALL_TARGET
                and intervention.target in participant_ids
            ):
                return intervention
        return None

    def pending(self, target: Optional[str] = None) -> List[Intervention]:
        """
        Pending interventions in application order.

        Args:
            target: Only those due for this participant (including 'all')
        """
        interventions = self._ordered()
        if target is not None:
            interventions = [i for i in interventions if i.targets(target)]
        return interventions

    def discard(self, ids: Optional[Collection[UUID]] = None) -> int:
        """
        Drop pending interventions without applying them.

        Args:
            ids: Only discard these ids; everything pending if None

        Returns:
            Number of interventions discarded
        """
        doomed = list(self._pending) if ids is None else [i for i in ids if i in self._pending]
        for intervention_id in doomed:
            _, _, intervention = self._pending.pop(intervention_id)
            self._discarded[intervention_id] = intervention
        if doomed:
            self.logger.info(f"Discarded {len(doomed)} unapplied interventions")
        return len(doomed)

    def is_pending(self, intervention_id: UUID) -> bool:
        return intervention_id in self._pending

    def get(self, intervention_id: UUID) -> Optional[Intervention]:
        """Look up an intervention in any state."""
        entry = self._pending.get(intervention_id)
        if entry is not None:
            return entry[2]
        return self._applied.get(intervention_id) or self._discarded.get(intervention_id)

    def stats(self) -> Dict[str, Any]:
        """Totals by outcome, kind and priority."""
        everything = (
            [entry[2] for entry in self._pending.values()]
            + list(self._applied.values())
            + list(self._discarded.values())
        )
        by_kind = {kind.value: 0 for kind in InterventionKind}
        by_priority = {priority.value: 0 for priority in InterventionPriority}
        for intervention in everything:
            by_kind[intervention.kind.value] += 1
            by_priority[intervention.priority.value] += 1

        return {
            "total": len(everything),
            "applied": len(self._applied),
            "pending": len(self._pending),
            "discarded": len(self._discarded),
            "by_kind": by_kind,
            "by_priority": by_priority,
        }
