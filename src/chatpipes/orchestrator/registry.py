"""
Conversation Registry for ChatPipes.

Hosts that run several conversations keep them in an explicit registry keyed
by conversation id instead of a process-wide "current conversation". A
registry can hand every conversation it creates the same memory compressor
and intervention queue, so participants keep their memory across
conversations.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from chatpipes.errors import InvalidStateError
from chatpipes.memory.compressor import MemoryCompressor
from chatpipes.orchestrator.conversation_state import is_terminal
from chatpipes.orchestrator.intervention_queue import InterventionQueue
from chatpipes.orchestrator.turn_engine import TurnEngine
from chatpipes.protocol.models import ConversationConfig, ConversationStatus, Participant
from chatpipes.protocol.observer_bus import ObserverBus
from chatpipes.protocol.recorder import ConversationRecorder


class ConversationRegistry:
    """
    Creates and tracks conversations.

    The ConversationRegistry is responsible for:
    - Creating turn engines wired to shared collaborators
    - Looking conversations up by id
    - Stopping and removing conversations
    """

    def __init__(
        self,
        compressor: Optional[MemoryCompressor] = None,
        queue: Optional[InterventionQueue] = None,
        observer_bus: Optional[ObserverBus] = None,
        recorder: Optional[ConversationRecorder] = None
    ):
        """
        Initialize the registry.

        Args:
            compressor: Memory shared by every conversation (one per conversation if None)
            queue: Intervention queue shared by every conversation (one per conversation if None)
            observer_bus: Bus shared by every conversation (one per conversation if None)
            recorder: Persistence collaborator handed to every conversation
        """
        self.compressor = compressor
        self.queue = queue
        self.observer_bus = observer_bus
        self.recorder = recorder
        self.conversations: Dict[UUID, TurnEngine] = {}
        self.logger = logging.getLogger("chatpipes.orchestrator.registry")

    def __len__(self) -> int:
        return len(self.conversations)

    def __contains__(self, conversation_id: UUID) -> bool:
        return conversation_id in self.conversations

    def create(
        self,
        participants: Sequence[Participant],
        config: Optional[ConversationConfig] = None,
        conversation_id: Optional[UUID] = None
    ) -> TurnEngine:
        """
        Create a conversation and register it. The conversation is not started.

        Raises:
            ValueError: If the id is already registered
        """
        if conversation_id is not None and conversation_id in self.conversations:
            raise ValueError(f"Conversation {conversation_id} already exists")

        engine = TurnEngine(
            participants,
            config=config,
            compressor=self.compressor,
            queue=self.queue,
            observer_bus=self.observer_bus,
            recorder=self.recorder,
            conversation_id=conversation_id
        )
        self.conversations[engine.id] = engine
        self.logger.info(f"Registered conversation {engine.id}")
        return engine

    def get(self, conversation_id: UUID) -> Optional[TurnEngine]:
        return self.conversations.get(conversation_id)

    def list(self, status: Optional[ConversationStatus] = None) -> List[TurnEngine]:
        """Registered conversations in creation order, optionally filtered by status."""
        engines = list(self.conversations.values())
        if status is not None:
            engines = [engine for engine in engines if engine.status == status]
        return engines

    async def remove(self, conversation_id: UUID) -> bool:
        """
        Stop a conversation if needed and forget it.

        Returns:
            False if the id is unknown
        """
        engine = self.conversations.pop(conversation_id, None)
        if engine is None:
            return False

        if not is_terminal(engine.status):
            await engine.stop()
        await engine.wait_closed()
        self.logger.info(f"Removed conversation {conversation_id}")
        return True

    async def stop_all(self) -> int:
        """
        Stop every conversation that is still active and wait for them to exit.

        Returns:
            Number of conversations stopped
        """
        stopped = 0
        for engine in self.list():
            if is_terminal(engine.status):
                continue
            try:
                await engine.stop()
                stopped += 1
            except InvalidStateError:
                # Ended on its own while others were being stopped
                continue

        await asyncio.gather(*(engine.wait_closed() for engine in self.list()), return_exceptions=True)
        self.logger.info(f"Stopped {stopped} conversations")
        return stopped
