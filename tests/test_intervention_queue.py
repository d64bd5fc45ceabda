"""
Tests for the intervention queue.
"""

import pytest

from chatpipes.orchestrator.intervention_queue import InterventionQueue
from chatpipes.protocol.models import Intervention, InterventionKind, InterventionPriority


def create_intervention(
    priority: InterventionPriority = InterventionPriority.MEDIUM,
    target: str = "all",
    kind: InterventionKind = InterventionKind.SIDE_QUESTION,
    payload: str = "What about the weather?"
) -> Intervention:
    """Helper function to create an intervention."""
    return Intervention(kind=kind, target=target, priority=priority, payload=payload)


def test_priority_then_fifo():
    """Test that high beats medium beats low, FIFO within a tier."""
    queue = InterventionQueue()
    low = queue.enqueue(create_intervention(InterventionPriority.LOW))
    high_1 = queue.enqueue(create_intervention(InterventionPriority.HIGH))
    medium = queue.enqueue(create_intervention(InterventionPriority.MEDIUM))
    high_2 = queue.enqueue(create_intervention(InterventionPriority.HIGH))

    popped = [queue.pop("alice") for _ in range(4)]

    assert [i.id for i in popped] == [high_1.id, high_2.id, medium.id, low.id]
    assert queue.pop("alice") is None


def test_pop_leaves_other_targets_in_place():
    """Test that interventions for other participants stay queued."""
    queue = InterventionQueue()
    for_bob = queue.enqueue(create_intervention(InterventionPriority.HIGH, target="bob"))
    for_all = queue.enqueue(create_intervention(InterventionPriority.LOW))

    assert queue.pop("alice").id == for_all.id
    assert queue.pop("alice") is None
    assert len(queue) == 1

    popped = queue.pop("bob")
    assert popped.id == for_bob.id
    assert popped.applied_at is not None


def test_applied_at_most_once():
    """Test that an intervention cannot be applied or enqueued twice."""
    queue = InterventionQueue()
    intervention = queue.enqueue(create_intervention())

    assert queue.pop("alice") is intervention
    assert queue.pop("alice") is None
    assert queue.pop_by_id(intervention.id) is None

    with pytest.raises(ValueError):
        queue.enqueue(intervention)


def test_pop_skips_control_kinds():
    """Test that pause and resume never reach a prompt."""
    queue = InterventionQueue()
    queue.enqueue(create_intervention(kind=InterventionKind.PAUSE, payload=""))

    assert queue.pop("alice") is None
    assert len(queue) == 1


def test_pop_control_respects_target_and_kind():
    """Test that pause and resume are popped only for their target."""
    queue = InterventionQueue()
    queue.enqueue(create_intervention(kind=InterventionKind.SIDE_QUESTION))
    pause = queue.enqueue(create_intervention(target="bob", kind=InterventionKind.PAUSE, payload=""))
    resume = queue.enqueue(create_intervention(
        InterventionPriority.LOW, kind=InterventionKind.RESUME, payload=""
    ))

    assert queue.pop_control("alice", kinds=[InterventionKind.PAUSE]) is None
    assert queue.pop_control("bob", kinds=[InterventionKind.RESUME]) is resume
    assert queue.pop_control("alice") is None
    assert queue.pop_control("bob") is pause
    assert pause.applied
    assert len(queue) == 1


def test_peek_direction():
    """Test finding a direction that names a specific speaker."""
    queue = InterventionQueue()
    queue.enqueue(create_intervention(kind=InterventionKind.DIRECTION, payload="General direction"))
    named = queue.enqueue(create_intervention(
        InterventionPriority.LOW, target="bob", kind=InterventionKind.DIRECTION, payload="Bob, talk tides"
    ))

    assert queue.peek_direction(["alice", "bob"]).id == named.id
    assert queue.peek_direction(["alice"]) is None
    # Peeking does not consume
    assert queue.is_pending(named.id)


def test_among_restricts_lookup():
    """Test restricting lookups to a set of owned ids."""
    queue = InterventionQueue()
    mine = queue.enqueue(create_intervention(InterventionPriority.LOW))
    queue.enqueue(create_intervention(InterventionPriority.HIGH))

    assert queue.pop("alice", among={mine.id}).id == mine.id
    assert queue.pop("alice", among={mine.id}) is None
    assert len(queue) == 1


def test_pending_listing():
    """Test listing pending interventions in application order."""
    queue = InterventionQueue()
    for_bob = queue.enqueue(create_intervention(InterventionPriority.LOW, target="bob"))
    for_all = queue.enqueue(create_intervention(InterventionPriority.HIGH))

    assert [i.id for i in queue.pending()] == [for_all.id, for_bob.id]
    assert [i.id for i in queue.pending("alice")] == [for_all.id]


def test_discard_and_stats():
    """Test discarding leftovers and the statistics."""
    queue = InterventionQueue()
    applied = queue.enqueue(create_intervention(InterventionPriority.HIGH))
    keep = queue.enqueue(create_intervention(kind=InterventionKind.CORRECTION, payload="Actually, 1969"))
    other = queue.enqueue(create_intervention(InterventionPriority.LOW, target="bob"))
    queue.pop("alice")

    assert queue.discard([keep.id]) == 1
    assert queue.discard([keep.id]) == 0

    stats = queue.stats()
    assert stats["total"] == 3
    assert stats["applied"] == 1
    assert stats["pending"] == 1
    assert stats["discarded"] == 1
    assert stats["by_kind"]["side_question"] == 2
    assert stats["by_kind"]["correction"] == 1
    assert stats["by_priority"] == {"low": 1, "medium": 1, "high": 1}

    assert queue.discard() == 1
    assert queue.get(other.id) is other
    assert queue.get(applied.id).applied
