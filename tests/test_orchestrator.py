"""
Tests for the turn engine.

This module runs complete conversations against offline agents and checks
speaker order, interventions, pause/resume/stop behaviour, retries, memory
feeding and the events published along the way.
"""

import asyncio
from typing import List, Optional

import pytest

from chatpipes.agents import CallableAgent, ScriptedAgent
from chatpipes.errors import (
    AlreadyRunningError,
    ConfigurationError,
    InterventionTargetError,
    InvalidStateError,
    SessionClosedError
)
from chatpipes.orchestrator import TurnEngine
from chatpipes.protocol import InMemoryRecorder
from chatpipes.protocol.models import (
    BROADCAST,
    ConversationConfig,
    ConversationStatus,
    Intervention,
    InterventionKind,
    InterventionPriority,
    Participant,
    SynthesisStrategy
)

NAMES = ["alice", "bob", "carol", "dave"]


def create_participants(count: int = 2, agents: Optional[dict] = None) -> List[Participant]:
    """Helper function to create participants backed by scripted agents."""
    agents = agents or {}
    return [
        Participant(
            id=name,
            name=name.capitalize(),
            agent=agents.get(name) or ScriptedAgent([f"{name} says hello", f"{name} says more"])
        )
        for name in NAMES[:count]
    ]


def create_engine(participants: List[Participant], **config) -> TurnEngine:
    """Helper function to create an engine with fast timings."""
    settings = {"turn_delay": 0.0, "retry_backoff": 0.0, "max_rounds": 3}
    settings.update(config)
    return TurnEngine(participants, ConversationConfig(**settings))


def collect_events(engine: TurnEngine) -> list:
    """Helper function to record every event an engine publishes."""
    events = []
    engine.subscribe(events.append)
    return events


def pairs(engine: TurnEngine):
    return [(exchange.from_id, exchange.to_id) for exchange in engine.conversation.exchanges]


@pytest.mark.asyncio
async def test_two_party_scenario():
    """Test three rounds between two participants starting with alice."""
    engine = create_engine(create_participants(), max_rounds=3, start_with="alice")

    conversation = await engine.run()

    assert pairs(engine) == [("alice", "bob"), ("bob", "alice"), ("alice", "bob")]
    assert [exchange.round for exchange in conversation.exchanges] == [1, 2, 3]
    assert conversation.round == 3
    assert conversation.current_speaker == "alice"
    assert conversation.status == ConversationStatus.STOPPED
    assert conversation.ended_at is not None


@pytest.mark.asyncio
async def test_alternation_from_second_participant():
    """Test alternation when the second participant starts."""
    engine = create_engine(create_participants(), max_rounds=4, start_with="bob")
    await engine.run()

    assert [f for f, _ in pairs(engine)] == ["bob", "alice", "bob", "alice"]


@pytest.mark.asyncio
async def test_group_round_robin_broadcasts():
    """Test round-robin speaking in a group of three."""
    engine = create_engine(create_participants(3), max_rounds=5)
    await engine.run()

    assert pairs(engine) == [
        ("alice", BROADCAST),
        ("bob", BROADCAST),
        ("carol", BROADCAST),
        ("alice", BROADCAST),
        ("bob", BROADCAST),
    ]


@pytest.mark.asyncio
async def test_zero_rounds():
    """Test that max_rounds=0 stops immediately."""
    participants = create_participants()
    engine = create_engine(participants, max_rounds=0)

    await engine.run()

    assert engine.status == ConversationStatus.STOPPED
    assert engine.conversation.exchanges == []
    assert participants[0].agent.prompts == []


@pytest.mark.asyncio
async def test_configuration_errors():
    """Test that bad setups fail at start with an error event."""
    no_agent = [Participant(id="alice", name="Alice"), Participant(id="bob", name="Bob", agent=ScriptedAgent(["hi"]))]
    duplicate = create_participants(1) + create_participants(1)

    cases = [
        create_engine([]),
        create_engine(create_participants(), start_with="zed"),
        create_engine(duplicate),
        create_engine(no_agent),
    ]
    for engine in cases:
        events = collect_events(engine)
        with pytest.raises(ConfigurationError):
            await engine.start()
        assert engine.status == ConversationStatus.IDLE
        assert [event.type for event in events] == ["error"]
        assert events[0].kind == "ConfigurationError"


@pytest.mark.asyncio
async def test_start_twice():
    """Test that a started conversation cannot be started again."""
    engine = create_engine(create_participants(), max_rounds=1)
    await engine.run()

    with pytest.raises(AlreadyRunningError):
        await engine.start()


@pytest.mark.asyncio
async def test_lifecycle_errors():
    """Test pause, resume and stop in states that do not allow them."""
    engine = create_engine(create_participants())

    await engine.pause()
    assert engine.status == ConversationStatus.IDLE

    with pytest.raises(InvalidStateError):
        await engine.resume()

    await engine.stop()
    assert engine.status == ConversationStatus.STOPPED

    with pytest.raises(InvalidStateError):
        await engine.stop()
    with pytest.raises(SessionClosedError):
        await engine.add_intervention(payload="Too late")


@pytest.mark.asyncio
async def test_unknown_intervention_target():
    """Test that interventions for unknown participants are never queued."""
    engine = create_engine(create_participants())

    with pytest.raises(InterventionTargetError):
        await engine.add_intervention(target="zed", payload="Hello?")

    assert len(engine.queue) == 0
    assert engine.get_state()["pending_interventions"] == 0


@pytest.mark.asyncio
async def test_correction_before_round_two():
    """Test that a high priority correction modifies round 2 only."""
    engine = create_engine(create_participants(), max_rounds=3, start_with="alice")
    added = []

    async def add_after_first_turn(event):
        if event.type == "turn_end" and event.round == 1:
            added.append(await engine.add_intervention(
                kind=InterventionKind.CORRECTION,
                priority=InterventionPriority.HIGH,
                payload="The meeting was on Tuesday."
            ))

    engine.subscribe(add_after_first_turn)
    await engine.run()

    first, second, third = engine.conversation.exchanges
    assert first.prompt_modification is None
    assert second.prompt_modification is not None
    assert second.prompt_modification.intervention_id == added[0].id
    assert second.metadata.intervention_id == added[0].id
    assert second.prompt.startswith("[CORRECTION] The meeting was on Tuesday.")
    assert second.prompt_modification.modified_prompt == second.prompt
    assert third.prompt_modification is None
    assert "[CORRECTION]" not in third.prompt


@pytest.mark.asyncio
async def test_intervention_applied_once():
    """Test that an intervention is applied in exactly one turn."""
    engine = create_engine(create_participants(), max_rounds=3)
    intervention = await engine.add_intervention(payload="Mention the moon.")

    await engine.run()

    modified = [e for e in engine.conversation.exchanges if e.prompt_modification is not None]
    assert len(modified) == 1
    assert modified[0].round == 1
    assert intervention.applied_at is not None

    stats = engine.get_stats()
    assert stats["interventions"]["applied"] == 1
    assert stats["interventions"]["pending"] == 0
    assert stats["prompt_modifications"] == 1


@pytest.mark.asyncio
async def test_side_question_waits_for_target():
    """Test that a targeted side question waits for its participant."""
    participants = create_participants()
    engine = create_engine(participants, max_rounds=2, start_with="alice")
    await engine.add_intervention(target="bob", payload="Do you like boats?")

    await engine.run()

    first, second = engine.conversation.exchanges
    assert first.prompt_modification is None
    assert second.from_id == "bob"
    assert second.prompt.endswith("[SIDE QUESTION] Do you like boats?")


@pytest.mark.asyncio
async def test_direction_overrides_speaker():
    """Test that a targeted direction picks the next speaker for one turn."""
    engine = create_engine(create_participants(), max_rounds=3, start_with="alice")
    direction = await engine.add_intervention(
        kind=InterventionKind.DIRECTION,
        target="bob",
        payload="Bob, talk about tides."
    )

    await engine.run()

    assert [f for f, _ in pairs(engine)] == ["bob", "alice", "bob"]
    first = engine.conversation.exchanges[0]
    assert first.metadata.intervention_id == direction.id
    assert "[DIRECTION] Bob, talk about tides." in first.prompt
    assert "[TOPIC]" not in first.prompt
    assert engine.get_stats()["turns_by_participant"] == {"alice": 1, "bob": 2}


@pytest.mark.asyncio
async def test_unapplied_interventions_reported_pending():
    """Test that leftovers are discarded at the end and reported as pending."""
    engine = create_engine(create_participants(), max_rounds=1, start_with="alice")
    await engine.add_intervention(target="bob", payload="Never asked")

    await engine.run()

    stats = engine.get_stats()
    assert stats["interventions"]["applied"] == 0
    assert stats["interventions"]["pending"] == 1
    assert engine.queue.stats()["discarded"] == 1
    assert len(engine.queue) == 0


def create_gated_agent(started: asyncio.Event, release: asyncio.Event) -> CallableAgent:
    """Helper function for an agent that blocks on its first call."""
    async def respond(prompt, context):
        if context.round == 1:
            started.set()
            await release.wait()
        return f"reply {context.round}"

    return CallableAgent(respond)


@pytest.mark.asyncio
async def test_pause_during_dispatch():
    """Test that pausing mid-dispatch keeps the exchange and blocks the next turn."""
    started, release, turn_done = asyncio.Event(), asyncio.Event(), asyncio.Event()
    participants = create_participants(agents={"alice": create_gated_agent(started, release)})
    engine = create_engine(participants, max_rounds=3, start_with="alice")
    engine.subscribe(lambda event: turn_done.set(), ["turn_end"])

    await engine.start()
    await started.wait()
    await engine.pause()
    release.set()
    await asyncio.wait_for(turn_done.wait(), timeout=1)
    await asyncio.sleep(0.05)

    assert len(engine.conversation.exchanges) == 1
    assert engine.status == ConversationStatus.PAUSED
    assert participants[1].agent.prompts == []

    await engine.resume()
    await asyncio.wait_for(engine.wait_closed(), timeout=1)

    assert len(engine.conversation.exchanges) == 3
    assert engine.status == ConversationStatus.STOPPED


@pytest.mark.asyncio
async def test_pause_and_resume_interventions():
    """Test that pause and resume interventions act between turns."""
    started, release, paused = asyncio.Event(), asyncio.Event(), asyncio.Event()
    participants = create_participants(agents={"alice": create_gated_agent(started, release)})
    engine = create_engine(participants, max_rounds=2, start_with="alice")
    engine.subscribe(
        lambda event: paused.set() if event.to_status == ConversationStatus.PAUSED else None,
        ["status_changed"]
    )

    await engine.start()
    await started.wait()
    pause = await engine.add_intervention(kind=InterventionKind.PAUSE)
    assert engine.status == ConversationStatus.RUNNING
    assert not pause.applied

    release.set()
    await asyncio.wait_for(paused.wait(), timeout=1)
    assert pause.applied
    assert len(engine.conversation.exchanges) == 1
    assert participants[1].agent.prompts == []

    resume = await engine.add_intervention(kind=InterventionKind.RESUME)
    await asyncio.wait_for(engine.wait_closed(), timeout=1)

    assert resume.applied
    assert len(engine.conversation.exchanges) == 2
    assert all(e.prompt_modification is None for e in engine.conversation.exchanges)
    assert engine.get_stats()["interventions"]["by_kind"]["pause"] == 1


@pytest.mark.asyncio
async def test_targeted_pause_added_before_start():
    """Test that a pause for bob waits in the queue until bob is due to speak."""
    paused = asyncio.Event()
    participants = create_participants()
    engine = create_engine(participants, max_rounds=3, start_with="alice")
    engine.subscribe(
        lambda event: paused.set() if event.to_status == ConversationStatus.PAUSED else None,
        ["status_changed"]
    )

    pause = await engine.add_intervention(kind=InterventionKind.PAUSE, target="bob")
    assert engine.status == ConversationStatus.IDLE
    assert not pause.applied
    assert engine.get_state()["pending_interventions"] == 1

    await engine.start()
    await asyncio.wait_for(paused.wait(), timeout=1)

    assert pause.applied
    assert engine.status == ConversationStatus.PAUSED
    assert [e.from_id for e in engine.conversation.exchanges] == ["alice"]
    assert participants[1].agent.prompts == []

    await engine.add_intervention(kind=InterventionKind.RESUME, target="bob")
    await asyncio.wait_for(engine.wait_closed(), timeout=1)

    assert [e.from_id for e in engine.conversation.exchanges] == ["alice", "bob", "alice"]
    assert engine.status == ConversationStatus.STOPPED


@pytest.mark.asyncio
async def test_resume_for_other_participant_waits():
    """Test that a resume aimed at someone other than the next speaker stays queued."""
    paused = asyncio.Event()
    engine = create_engine(create_participants(), max_rounds=3, start_with="alice")
    engine.subscribe(
        lambda event: paused.set() if event.to_status == ConversationStatus.PAUSED else None,
        ["status_changed"]
    )
    await engine.add_intervention(kind=InterventionKind.PAUSE, target="bob")

    await engine.start()
    await asyncio.wait_for(paused.wait(), timeout=1)
    resume = await engine.add_intervention(kind=InterventionKind.RESUME, target="alice")
    await asyncio.sleep(0.05)

    assert engine.status == ConversationStatus.PAUSED
    assert not resume.applied

    await engine.resume()
    await asyncio.wait_for(engine.wait_closed(), timeout=1)

    assert resume.applied
    assert len(engine.conversation.exchanges) == 3


@pytest.mark.asyncio
async def test_stop_discards_in_flight_result():
    """Test that a response arriving after stop is not recorded."""
    started, release = asyncio.Event(), asyncio.Event()
    participants = create_participants(agents={"alice": create_gated_agent(started, release)})
    engine = create_engine(participants, max_rounds=3, start_with="alice")

    await engine.start()
    await started.wait()
    await engine.stop()
    release.set()
    await asyncio.wait_for(engine.wait_closed(), timeout=1)

    assert engine.status == ConversationStatus.STOPPED
    assert engine.conversation.exchanges == []
    assert len(participants[0].agent.prompts) == 1


@pytest.mark.asyncio
async def test_stop_cancels_delay():
    """Test that stopping during the inter-turn delay prevents the next turn."""
    turn_done = asyncio.Event()
    engine = create_engine(create_participants(), max_rounds=3, turn_delay=30.0)
    engine.subscribe(lambda event: turn_done.set(), ["turn_end"])

    await engine.start()
    await asyncio.wait_for(turn_done.wait(), timeout=1)
    await engine.stop()
    await asyncio.wait_for(engine.wait_closed(), timeout=1)

    assert len(engine.conversation.exchanges) == 1


@pytest.mark.asyncio
async def test_retry_then_success():
    """Test that a transient failure is retried."""
    participants = create_participants(agents={"alice": ScriptedAgent(["finally"], fail_on=[1])})
    engine = create_engine(participants, max_rounds=1, max_retries=2)
    events = collect_events(engine)

    await engine.run()

    exchange = engine.conversation.exchanges[0]
    assert exchange.response == "finally"
    assert exchange.metadata.attempts == 2
    assert engine.status == ConversationStatus.STOPPED
    assert "error" not in [event.type for event in events]


@pytest.mark.asyncio
async def test_retries_exhausted():
    """Test that exhausting retries errors the conversation."""
    agent = ScriptedAgent(["never"], fail_on=[1, 2, 3])
    engine = create_engine(create_participants(agents={"alice": agent}), max_retries=2)
    events = collect_events(engine)

    await engine.run()

    assert engine.status == ConversationStatus.ERRORED
    assert engine.conversation.exchanges == []
    assert agent.get_stats().requests == 3
    errors = [event for event in events if event.type == "error"]
    assert len(errors) == 1
    assert errors[0].kind == "CommunicationError"
    assert events[-1].type == "status_changed"
    assert events[-1].to_status == ConversationStatus.ERRORED

    with pytest.raises(SessionClosedError):
        await engine.add_intervention(payload="Hello?")


@pytest.mark.asyncio
async def test_dispatch_timeout():
    """Test that a slow agent times out."""
    async def slow(prompt, context):
        await asyncio.sleep(5)
        return "too late"

    engine = create_engine(
        create_participants(agents={"alice": CallableAgent(slow)}),
        dispatch_timeout=0.05,
        max_retries=1
    )
    events = collect_events(engine)

    await engine.run()

    assert engine.status == ConversationStatus.ERRORED
    errors = [event for event in events if event.type == "error"]
    assert "timed out" in errors[0].message
    assert engine.get_stats()["dispatch_attempts"] == 2


@pytest.mark.asyncio
async def test_unexpected_agent_error_not_retried():
    """Test that errors other than communication failures are fatal at once."""
    calls = []

    async def broken(prompt, context):
        calls.append(context.attempt)
        raise ValueError("bad payload")

    engine = create_engine(create_participants(agents={"alice": CallableAgent(broken)}), max_retries=3)
    events = collect_events(engine)

    await engine.run()

    assert calls == [1]
    assert engine.status == ConversationStatus.ERRORED
    assert [event.kind for event in events if event.type == "error"] == ["ValueError"]


@pytest.mark.asyncio
async def test_event_sequence():
    """Test the events published by a one-round conversation."""
    engine = create_engine(create_participants(), max_rounds=1)
    events = collect_events(engine)
    await engine.add_intervention(payload="Say hi")

    await engine.run()

    assert [event.type for event in events] == [
        "intervention_added",
        "status_changed",
        "turn_start",
        "intervention_applied",
        "turn_end",
        "status_changed",
    ]
    assert all(event.conversation_id == engine.id for event in events)
    assert events[2].speaker_id == "alice"
    assert events[4].exchange == engine.conversation.exchanges[0]


@pytest.mark.asyncio
async def test_failing_observer_is_isolated():
    """Test that a broken observer does not disturb the conversation."""
    engine = create_engine(create_participants(), max_rounds=2)

    def broken(event):
        raise RuntimeError("observer bug")

    engine.subscribe(broken)
    await engine.run()

    assert len(engine.conversation.exchanges) == 2
    assert engine.observer_bus.delivery_failures > 0


@pytest.mark.asyncio
async def test_responses_feed_memory():
    """Test that responses are ingested and compressed."""
    engine = create_engine(create_participants(), max_rounds=4, compress_every_n_turns=1, rehydration_budget=200)

    await engine.run()

    assert engine.compressor.store.count("alice") == 2
    assert engine.compressor.store.count("bob") == 2
    summary = engine.get_rehydration_summary("alice")
    assert summary
    assert len(summary) <= 200
    assert engine.get_stats()["compression_ratio"] > 0


@pytest.mark.asyncio
async def test_on_demand_compression():
    """Test that compression can be left to the caller."""
    engine = create_engine(create_participants(), max_rounds=2, compress_every_n_turns=0)

    await engine.run()

    assert engine.compressor.get_items() == []
    assert engine.compress_memory()
    assert engine.get_rehydration_summary("bob")


@pytest.mark.asyncio
async def test_memory_reaches_prompts():
    """Test that a speaker's own summary is part of its later prompts."""
    alice = ScriptedAgent(["I live in Lisbon."])
    engine = create_engine(create_participants(agents={"alice": alice}), max_rounds=3, start_with="alice")

    await engine.run()

    assert "[MEMORY]" not in alice.prompts[0]
    assert "[MEMORY]\nFact: I live in Lisbon." in alice.prompts[1]


@pytest.mark.asyncio
async def test_synthesis_strategies():
    """Test the context strategies for group conversations."""
    prompts = {}
    for strategy in SynthesisStrategy:
        alice = ScriptedAgent(["alice speaks"])
        engine = create_engine(
            create_participants(3, agents={"alice": alice}),
            max_rounds=4,
            synthesis_strategy=strategy
        )
        await engine.run()
        prompts[strategy] = alice.prompts[-1]

    assert "Carol: carol says hello" in prompts[SynthesisStrategy.RECENT]
    assert "About Bob:" not in prompts[SynthesisStrategy.RECENT]
    assert "About Bob:" in prompts[SynthesisStrategy.ALL]
    assert "About Carol:" in prompts[SynthesisStrategy.ALL]
    assert "[bob]" in prompts[SynthesisStrategy.WEIGHTED]
    assert "[carol]" in prompts[SynthesisStrategy.WEIGHTED]
    assert "[alice]" not in prompts[SynthesisStrategy.WEIGHTED]


@pytest.mark.asyncio
async def test_opening_topic():
    """Test that the opening topic frames the first prompt."""
    alice = ScriptedAgent(["ok"])
    engine = create_engine(create_participants(agents={"alice": alice}), max_rounds=1, opening_topic="lighthouses")

    await engine.run()

    assert alice.prompts[0].endswith("[TOPIC]\nlighthouses")


@pytest.mark.asyncio
async def test_recorder_receives_records():
    """Test that the recorder sees the header, exchanges and interventions."""
    recorder = InMemoryRecorder()
    engine = TurnEngine(
        create_participants(),
        ConversationConfig(max_rounds=2, turn_delay=0.0),
        recorder=recorder
    )
    intervention = await engine.add_intervention(payload="Say hi")

    await engine.run()

    assert recorder.get_conversation(engine.id).status == ConversationStatus.STOPPED
    assert len(recorder.get_exchanges(engine.id)) == 2
    recorded = recorder.get_interventions(engine.id)
    assert recorded[0].id == intervention.id
    assert recorded[0].applied_at is not None


@pytest.mark.asyncio
async def test_state_and_transcript():
    """Test the query surface."""
    engine = create_engine(create_participants(), max_rounds=2)
    await engine.add_intervention(target="bob", priority=InterventionPriority.LOW, payload="Your view?")

    state = engine.get_state()
    assert state["status"] == ConversationStatus.IDLE
    assert state["pending_interventions"] == 1
    assert state["round"] == 0

    await engine.run()

    state = engine.get_state()
    assert state["round"] == 2
    assert state["current_speaker"] == "bob"
    assert state["pending_interventions"] == 0

    transcript = engine.get_transcript()
    assert transcript.total_rounds == 2
    assert transcript.total_exchanges == 2
    assert len(transcript.prompt_modifications) == 1
    assert transcript.interventions[0].applied_at is not None
    assert transcript.ended_at is not None


@pytest.mark.asyncio
async def test_intervention_objects_accepted():
    """Test passing a ready-made Intervention."""
    engine = create_engine(create_participants(), max_rounds=1)
    intervention = Intervention(kind=InterventionKind.SIDE_QUESTION, payload="Why?")

    assert await engine.add_intervention(intervention) is intervention
    with pytest.raises(ValueError):
        await engine.add_intervention(intervention)
