"""
Turn Engine for ChatPipes.

This module implements the conversation state machine: it selects the next
speaker, composes the prompt from persona, compressed memory and pending
interventions, dispatches it to the speaker's agent, records the exchange and
publishes events about all of it.

Each conversation runs as a single asyncio task with exactly one turn in
flight. The only suspension points that can take long are the agent dispatch
and the inter-turn delay; the delay (and retry backoff) is cut short by
``stop()``, while an in-flight dispatch is allowed to finish and its result is
discarded.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
from uuid import UUID

from chatpipes.agents.base import DispatchContext
from chatpipes.errors import (
    AlreadyRunningError,
    CommunicationError,
    ConfigurationError,
    InterventionTargetError,
    InvalidStateError,
    SessionClosedError
)
from chatpipes.memory.compressor import MemoryCompressor
from chatpipes.orchestrator.conversation_state import ensure_state_transition, is_terminal
from chatpipes.orchestrator.intervention_queue import InterventionQueue
from chatpipes.orchestrator.prompt_builder import ComposedPrompt, PromptBuilder
from chatpipes.orchestrator.turn_policy import TurnManager
from chatpipes.protocol.events import (
    ErrorEvent,
    Event,
    InterventionAddedEvent,
    InterventionAppliedEvent,
    StatusChangedEvent,
    TurnEndEvent,
    TurnStartEvent
)
from chatpipes.protocol.models import (
    ALL_TARGET,
    BROADCAST,
    CompressedMemoryItem,
    Conversation,
    ConversationConfig,
    ConversationStatus,
    Exchange,
    ExchangeMetadata,
    Intervention,
    InterventionKind,
    InterventionPriority,
    Participant,
    PromptModification,
    SynthesisStrategy,
    Transcript,
    utcnow
)
from chatpipes.protocol.observer_bus import Observer, ObserverBus
from chatpipes.protocol.recorder import ConversationRecorder


class TurnEngine:
    """
    Runs one conversation.

    The TurnEngine is responsible for:
    - Validating the conversation setup and driving its lifecycle
    - Choosing speakers (alternation, round-robin or a direction override)
    - Building prompts from persona, memory and interventions
    - Dispatching with timeout and bounded retries
    - Feeding responses into memory and recording exchanges
    - Publishing events to observers and records to the recorder
    """

    def __init__(
        self,
        participants: Sequence[Participant],
        config: Optional[ConversationConfig] = None,
        compressor: Optional[MemoryCompressor] = None,
        queue: Optional[InterventionQueue] = None,
        observer_bus: Optional[ObserverBus] = None,
        recorder: Optional[ConversationRecorder] = None,
        conversation_id: Optional[UUID] = None
    ):
        """
        Initialize the turn engine.

        Args:
            participants: Ordered participants, each with an agent
            config: Conversation configuration
            compressor: Memory compressor (may be shared between conversations)
            queue: Intervention queue (may be shared between conversations)
            observer_bus: Bus to publish events on
            recorder: Optional persistence collaborator
            conversation_id: Explicit id for the conversation
        """
        fields: Dict[str, Any] = {"participants": list(participants), "config": config or ConversationConfig()}
        if conversation_id is not None:
            fields["id"] = conversation_id
        self.conversation = Conversation(**fields)

        self.compressor = compressor if compressor is not None else MemoryCompressor()
        self.queue = queue if queue is not None else InterventionQueue()
        self.observer_bus = observer_bus if observer_bus is not None else ObserverBus()
        self.recorder = recorder
        self.prompt_builder = PromptBuilder()
        self.turn_manager: Optional[TurnManager] = None

        self._interventions: List[Intervention] = []
        self._owned_interventions: Set[UUID] = set()
        self._prompt_modifications: List[PromptModification] = []
        self._discarded_interventions = 0
        self._dispatch_attempts = 0
        self._errors = 0

        self._signal = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self.logger = logging.getLogger("chatpipes.orchestrator")

    @property
    def id(self) -> UUID:
        return self.conversation.id

    @property
    def status(self) -> ConversationStatus:
        return self.conversation.status

    @property
    def participant_ids(self) -> List[str]:
        return [p.id for p in self.conversation.participants]

    # Observer passthroughs

    def subscribe(self, observer: Observer, event_types: Optional[List[str]] = None) -> UUID:
        """Register an observer on this conversation's bus."""
        return self.observer_bus.subscribe(observer, event_types)

    def unsubscribe(self, token: UUID) -> bool:
        return self.observer_bus.unsubscribe(token)

    # Lifecycle

    async def start(self) -> None:
        """
        Validate the setup and launch the turn loop as a background task.

        Raises:
            AlreadyRunningError: If the conversation is not idle
            ConfigurationError: If the setup is invalid
        """
        if self.status != ConversationStatus.IDLE:
            raise AlreadyRunningError(f"Conversation {self.id} is {self.status.value}, not idle")

        await self._validate()

        self.turn_manager = TurnManager(self.participant_ids, self.conversation.config.start_with)
        self.conversation.started_at = utcnow()
        await self._set_status(ConversationStatus.RUNNING)

        self.logger.info(
            f"Started conversation {self.id} with {len(self.participant_ids)} participants "
            f"for {self.conversation.config.max_rounds} rounds"
        )
        self._task = asyncio.create_task(self._run_loop(), name=f"conversation-{self.id}")

    async def run(self) -> Conversation:
        """Start the conversation and wait until it ends."""
        await self.start()
        await self.wait_closed()
        return self.conversation

    async def wait_closed(self) -> None:
        """Wait for the turn loop to exit. Returns at once if it never started."""
        if self._task is not None:
            await self._task

    async def pause(self) -> None:
        """Pause between turns. No-op unless the conversation is running."""
        if self.status != ConversationStatus.RUNNING:
            self.logger.debug(f"Ignoring pause of conversation {self.id} in state {self.status.value}")
            return
        await self._set_status(ConversationStatus.PAUSED)
        self.logger.info(f"Paused conversation {self.id}")

    async def resume(self) -> None:
        """
        Resume a paused conversation.

        Raises:
            InvalidStateError: If the conversation is not paused
        """
        if self.status != ConversationStatus.PAUSED:
            raise InvalidStateError(f"Cannot resume conversation {self.id} in state {self.status.value}")
        await self._set_status(ConversationStatus.RUNNING)
        self._signal.set()
        self.logger.info(f"Resumed conversation {self.id}")

    async def stop(self) -> None:
        """
        Stop the conversation.

        The status becomes stopped immediately. A pending delay or backoff is
        cut short; a dispatch already in flight may complete, but its result is
        not recorded.

        Raises:
            InvalidStateError: If the conversation already ended
        """
        if is_terminal(self.status):
            raise InvalidStateError(f"Conversation {self.id} already {self.status.value}")

        await self._set_status(ConversationStatus.STOPPED)
        self._signal.set()
        self.logger.info(f"Stopping conversation {self.id}")

        if self._task is None:
            self._close()

    # Interventions

    async def add_intervention(self, intervention: Optional[Intervention] = None, **kwargs: Any) -> Intervention:
        """
        Queue an intervention for a later turn.

        Either pass an Intervention or the fields to build one
        (``kind``, ``target``, ``priority``, ``payload``). Pause and resume
        kinds take effect between turns, once their target is the next
        speaker, and never occupy a turn.

        Returns:
            The queued intervention

        Raises:
            SessionClosedError: If the conversation already ended
            InterventionTargetError: If the target is not a participant
        """
        if intervention is None:
            intervention = Intervention(**kwargs)

        if is_terminal(self.status):
            raise SessionClosedError(f"Conversation {self.id} is {self.status.value}")
        if intervention.target != ALL_TARGET and self.conversation.get_participant(intervention.target) is None:
            raise InterventionTargetError(f"Unknown intervention target: {intervention.target}")

        self.queue.enqueue(intervention)
        self._owned_interventions.add(intervention.id)
        self._interventions.append(intervention)

        self.logger.info(
            f"Added {intervention.kind.value} intervention {intervention.id} "
            f"for {intervention.target} to conversation {self.id}"
        )
        await self._publish(InterventionAddedEvent(conversation_id=self.id, intervention=intervention.model_copy()))
        await self._record_intervention(intervention)

        # Wake a paused loop so it can pick up a resume
        if intervention.kind == InterventionKind.RESUME and self.status == ConversationStatus.PAUSED:
            self._signal.set()

        return intervention

    # Queries

    def get_state(self) -> Dict[str, Any]:
        """Current round, speaker, status and pending intervention count."""
        return {
            "conversation_id": self.id,
            "round": self.conversation.round,
            "current_speaker": self.conversation.current_speaker,
            "status": self.status,
            "pending_interventions": self._pending_count(),
            "exchanges": len(self.conversation.exchanges),
        }

    def get_rehydration_summary(self, participant_id: str, budget: Optional[int] = None) -> str:
        """Rendered compressed memory for a participant."""
        if budget is None:
            budget = self.conversation.config.rehydration_budget
        return self.compressor.get_rehydration_summary(participant_id, budget)

    def get_stats(self) -> Dict[str, Any]:
        """Exchange, intervention and compression statistics."""
        by_kind = {kind.value: 0 for kind in InterventionKind}
        by_priority = {priority.value: 0 for priority in InterventionPriority}
        for intervention in self._interventions:
            by_kind[intervention.kind.value] += 1
            by_priority[intervention.priority.value] += 1

        applied = sum(1 for intervention in self._interventions if intervention.applied)
        compression = self.compressor.get_compression_stats()
        if self.turn_manager is not None:
            turns = dict(self.turn_manager.turns_taken)
        else:
            turns = {pid: 0 for pid in self.participant_ids}

        return {
            "conversation_id": self.id,
            "status": self.status,
            "rounds": self.conversation.round,
            "exchanges": len(self.conversation.exchanges),
            "dispatch_attempts": self._dispatch_attempts,
            "errors": self._errors,
            "turns_by_participant": turns,
            "interventions": {
                "total": len(self._interventions),
                "applied": applied,
                "pending": self._pending_count() + self._discarded_interventions,
                "by_kind": by_kind,
                "by_priority": by_priority,
            },
            "prompt_modifications": len(self._prompt_modifications),
            "compression_ratio": compression["ratio"],
            "compressed_items": compression["compressed_count"],
        }

    def get_transcript(self) -> Transcript:
        """Read-only view of everything recorded so far."""
        conversation = self.conversation
        return Transcript(
            conversation_id=self.id,
            exchanges=list(conversation.exchanges),
            interventions=[intervention.model_copy() for intervention in self._interventions],
            prompt_modifications=list(self._prompt_modifications),
            started_at=conversation.started_at,
            ended_at=conversation.ended_at,
            total_rounds=conversation.round,
            total_exchanges=len(conversation.exchanges)
        )

    def compress_memory(self) -> List[CompressedMemoryItem]:
        """Run a compression pass now."""
        return self.compressor.compress()

    # Turn loop

    async def _run_loop(self) -> None:
        config = self.conversation.config
        try:
            while True:
                if not await self._wait_until_runnable():
                    break
                if self.conversation.round >= config.max_rounds:
                    await self._set_status(ConversationStatus.STOPPED)
                    break
                await self._apply_controls(self._next_speaker())
                if self.status != ConversationStatus.RUNNING:
                    continue
                if not await self._run_turn():
                    break
                if self.conversation.round < config.max_rounds:
                    await self._wait_signal(config.turn_delay)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error in conversation {self.id}")
            await self._emit_error("internal", str(e))
            if not is_terminal(self.status):
                await self._set_status(ConversationStatus.ERRORED)
            raise
        finally:
            self._close()

        self.logger.info(
            f"Conversation {self.id} ended as {self.status.value} "
            f"after {self.conversation.round} rounds"
        )

    async def _wait_until_runnable(self) -> bool:
        """Block while paused. Returns False once the conversation ended."""
        while self.status == ConversationStatus.PAUSED:
            self._signal.clear()
            await self._apply_controls(self._next_speaker(), kinds=(InterventionKind.RESUME,))
            if self.status != ConversationStatus.PAUSED:
                break
            await self._signal.wait()
        return self.status == ConversationStatus.RUNNING

    def _next_speaker(self) -> str:
        """Speaker of the coming turn, honouring a targeted direction."""
        direction = self.queue.peek_direction(self.participant_ids, among=self._owned_interventions)
        return direction.target if direction is not None else self.turn_manager.get_next_speaker()

    async def _apply_controls(
        self,
        speaker_id: str,
        kinds: Optional[Tuple[InterventionKind, ...]] = None
    ) -> None:
        """Apply every due pause or resume for the coming speaker, in queue order."""
        while True:
            intervention = self.queue.pop_control(speaker_id, among=self._owned_interventions, kinds=kinds)
            if intervention is None:
                return
            if intervention.kind == InterventionKind.PAUSE:
                await self.pause()
            elif self.status == ConversationStatus.PAUSED:
                await self.resume()
            self.logger.info(
                f"Applied {intervention.kind.value} intervention {intervention.id} "
                f"before {speaker_id}'s turn in conversation {self.id}"
            )
            await self._record_intervention(intervention)

    async def _wait_signal(self, seconds: float) -> bool:
        """Sleep, waking early on stop or resume. Returns True if woken early."""
        if is_terminal(self.status):
            return True
        if seconds <= 0:
            return False
        self._signal.clear()
        try:
            await asyncio.wait_for(self._signal.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_turn(self) -> bool:
        """
        Run one turn.

        Returns:
            True if an exchange was recorded, False if the loop must exit
        """
        conversation = self.conversation
        config = conversation.config

        # Speaker: a targeted direction overrides the rotation for one turn
        direction = self.queue.peek_direction(self.participant_ids, among=self._owned_interventions)
        speaker_id = self._next_speaker()
        speaker = conversation.get_participant(speaker_id)
        round_number = conversation.round + 1
        conversation.current_speaker = speaker_id

        self.logger.debug(f"Conversation {self.id} round {round_number}: {speaker_id} speaks")
        await self._publish(TurnStartEvent(conversation_id=self.id, round=round_number, speaker_id=speaker_id))

        prompt = self._compose_prompt(speaker)

        applied: List[Intervention] = []
        if direction is not None:
            overriding = self.queue.pop_by_id(direction.id)
            if overriding is not None:
                applied.append(overriding)
        while len(applied) < config.max_interventions_per_turn:
            intervention = self.queue.pop(speaker_id, among=self._owned_interventions)
            if intervention is None:
                break
            applied.append(intervention)

        prompt, modification = await self._apply_interventions(prompt, applied)
        text = prompt.render()

        addressee = self.turn_manager.get_addressee(speaker_id)
        start_time = time.monotonic()
        result = await self._dispatch(speaker, text, round_number, addressee)
        duration_ms = (time.monotonic() - start_time) * 1000

        if result is None:
            return False
        response, attempts = result

        if is_terminal(self.status):
            self.logger.info(f"Discarding response from {speaker_id}: conversation {self.id} was stopped")
            return False

        self.compressor.ingest(speaker_id, response)

        exchange = Exchange(
            from_id=speaker_id,
            to_id=addressee or BROADCAST,
            prompt=text,
            response=response,
            round=round_number,
            metadata=ExchangeMetadata(
                duration_ms=duration_ms,
                token_estimate=(len(text) + len(response)) // 4,
                attempts=attempts,
                intervention_id=modification.intervention_id if modification else None
            ),
            prompt_modification=modification
        )
        conversation.exchanges.append(exchange)
        conversation.round = round_number
        self.turn_manager.record_turn(speaker_id)

        if config.compress_every_n_turns and round_number % config.compress_every_n_turns == 0:
            self._compress()

        await self._publish(TurnEndEvent(
            conversation_id=self.id,
            round=round_number,
            speaker_id=speaker_id,
            exchange=exchange
        ))
        await self._record_exchange(exchange)
        return True

    def _compose_prompt(self, speaker: Participant) -> ComposedPrompt:
        conversation = self.conversation
        config = conversation.config
        budget = config.rehydration_budget

        memory = self.compressor.get_rehydration_summary(speaker.id, budget)

        context_lines = []
        previous = conversation.exchanges[-1] if conversation.exchanges else None
        if previous is not None:
            context_lines.append(f"{self._name(previous.from_id)}: {previous.response}")

        others = [pid for pid in self.participant_ids if pid != speaker.id]
        if len(self.participant_ids) > 2:
            if config.synthesis_strategy == SynthesisStrategy.ALL:
                for pid in others:
                    summary = self.compressor.get_rehydration_summary(pid, budget)
                    if summary:
                        context_lines.append(f"About {self._name(pid)}:\n{summary}")
            elif config.synthesis_strategy == SynthesisStrategy.WEIGHTED:
                summary = self.compressor.get_weighted_summary(others, budget, config.weighted_recency_weight)
                if summary:
                    context_lines.append(summary)

        if previous is None:
            topic = config.opening_topic or "Open the conversation."
        elif config.opening_topic:
            topic = f"Continue the conversation about {config.opening_topic}, responding to {self._name(previous.from_id)}."
        else:
            topic = f"Continue the conversation, responding to {self._name(previous.from_id)}."

        return self.prompt_builder.build(speaker, memory=memory, context_lines=context_lines, topic=topic)

    async def _apply_interventions(
        self,
        prompt: ComposedPrompt,
        interventions: List[Intervention]
    ) -> Tuple[ComposedPrompt, Optional[PromptModification]]:
        modification = None
        for intervention in interventions:
            original = prompt.render()
            prompt = self.prompt_builder.apply(prompt, intervention)
            modification = PromptModification(
                intervention_id=intervention.id,
                original_prompt=original,
                modified_prompt=prompt.render(),
                applied_at=intervention.applied_at
            )
            self._prompt_modifications.append(modification)

            self.logger.info(f"Applied {intervention.kind.value} intervention {intervention.id} in conversation {self.id}")
            await self._publish(InterventionAppliedEvent(
                conversation_id=self.id,
                intervention_id=intervention.id,
                original_prompt=modification.original_prompt,
                modified_prompt=modification.modified_prompt
            ))
            await self._record_intervention(intervention)
        return prompt, modification

    async def _dispatch(
        self,
        speaker: Participant,
        prompt: str,
        round_number: int,
        addressee: Optional[str]
    ) -> Optional[Tuple[str, int]]:
        """
        Send a prompt with timeout and bounded exponential backoff.

        Returns:
            (response, attempts), or None if the conversation ended or errored
        """
        config = self.conversation.config
        attempt = 0
        last_error: Optional[Exception] = None

        while True:
            attempt += 1
            self._dispatch_attempts += 1
            context = DispatchContext(
                conversation_id=self.id,
                round=round_number,
                speaker_id=speaker.id,
                addressee_id=addressee or BROADCAST,
                attempt=attempt,
                temperature=speaker.persona.temperature,
                max_tokens=speaker.persona.max_tokens
            )
            try:
                response = await asyncio.wait_for(speaker.agent.send(prompt, context), timeout=config.dispatch_timeout)
                if not isinstance(response, str):
                    raise CommunicationError(
                        f"Agent returned {type(response).__name__} instead of text",
                        participant_id=speaker.id,
                        attempts=attempt
                    )
                return response, attempt
            except asyncio.CancelledError:
                raise
            except (CommunicationError, asyncio.TimeoutError) as e:
                last_error = e
            except Exception as e:
                self._errors += 1
                message = f"Agent for {speaker.id} failed: {e}"
                self.logger.error(message)
                await self._emit_error(type(e).__name__, message)
                await self._fail()
                return None

            if is_terminal(self.status):
                return None
            if attempt > config.max_retries:
                break

            backoff = min(
                config.retry_backoff * config.retry_backoff_multiplier ** (attempt - 1),
                config.retry_backoff_max
            )
            reason = "timed out" if isinstance(last_error, asyncio.TimeoutError) else str(last_error)
            self.logger.warning(
                f"Dispatch to {speaker.id} failed ({reason}), "
                f"retry {attempt}/{config.max_retries} in {backoff:.2f}s"
            )
            await self._wait_signal(backoff)
            if is_terminal(self.status):
                return None

        self._errors += 1
        reason = "timed out" if isinstance(last_error, asyncio.TimeoutError) else str(last_error)
        message = f"Dispatch to {speaker.id} failed after {attempt} attempts: {reason}"
        self.logger.error(message)
        await self._emit_error(CommunicationError.__name__, message)
        await self._fail()
        return None

    async def _fail(self) -> None:
        if not is_terminal(self.status):
            await self._set_status(ConversationStatus.ERRORED)

    def _compress(self) -> None:
        try:
            self.compressor.compress()
        except Exception as e:
            self.logger.debug(f"Compression failed in conversation {self.id}: {e}")

    def _close(self) -> None:
        """Discard this conversation's unapplied interventions."""
        discarded = self.queue.discard(ids=list(self._owned_interventions))
        self._discarded_interventions += discarded

    def _pending_count(self) -> int:
        return sum(1 for intervention_id in self._owned_interventions if self.queue.is_pending(intervention_id))

    def _name(self, participant_id: str) -> str:
        participant = self.conversation.get_participant(participant_id)
        return participant.name if participant else participant_id

    # Validation, status and collaborators

    async def _validate(self) -> None:
        conversation = self.conversation
        ids = self.participant_ids
        problem = None

        if not ids:
            problem = "Conversation has no participants"
        elif len(set(ids)) != len(ids):
            problem = "Participant ids must be unique"
        elif conversation.config.start_with is not None and conversation.config.start_with not in ids:
            problem = f"Starting participant {conversation.config.start_with} is not in the conversation"
        else:
            missing = [p.id for p in conversation.participants if p.agent is None]
            if missing:
                problem = f"Participants without an agent: {', '.join(missing)}"

        if problem is not None:
            self.logger.error(f"Cannot start conversation {self.id}: {problem}")
            await self._emit_error(ConfigurationError.__name__, problem)
            raise ConfigurationError(problem)

    async def _set_status(self, new_status: ConversationStatus) -> None:
        old_status = self.conversation.status
        if old_status == new_status:
            return
        ensure_state_transition(old_status, new_status)

        self.conversation.status = new_status
        if is_terminal(new_status):
            self.conversation.ended_at = utcnow()

        self.logger.info(f"Conversation {self.id} changed state from {old_status.value} to {new_status.value}")
        await self._publish(StatusChangedEvent(
            conversation_id=self.id,
            from_status=old_status,
            to_status=new_status
        ))
        await self._record_conversation()

    async def _emit_error(self, kind: str, message: str) -> None:
        await self._publish(ErrorEvent(conversation_id=self.id, kind=kind, message=message))

    async def _publish(self, event: Event) -> None:
        await self.observer_bus.publish(event)

    async def _record_conversation(self) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.record_conversation(self.conversation)
        except Exception as e:
            self.logger.error(f"Error recording conversation {self.id}: {e}")

    async def _record_exchange(self, exchange: Exchange) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.record_exchange(self.id, exchange)
        except Exception as e:
            self.logger.error(f"Error recording exchange {exchange.id}: {e}")

    async def _record_intervention(self, intervention: Intervention) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.record_intervention(self.id, intervention)
        except Exception as e:
            self.logger.error(f"Error recording intervention {intervention.id}: {e}")
