"""
Conversation recorder contract.

Durable storage of conversation records is provided by an external
collaborator. The turn engine only hands it serialized-ready records: the
conversation header whenever its status changes, each exchange once, and each
intervention whenever it is added or applied.
"""

from abc import ABC, abstractmethod
from copy import deepcopy
from typing import Dict, List, Optional
from uuid import UUID

from chatpipes.protocol.models import Conversation, Exchange, Intervention


class ConversationRecorder(ABC):
    """Abstract sink for conversation records."""

    @abstractmethod
    async def record_conversation(self, conversation: Conversation) -> bool:
        """
        Store the current header of a conversation.

        Args:
            conversation: The conversation to record

        Returns:
            True if the record was stored, False otherwise
        """
        pass

    @abstractmethod
    async def record_exchange(self, conversation_id: UUID, exchange: Exchange) -> bool:
        """Append an exchange. Exchanges are never rewritten."""
        pass

    @abstractmethod
    async def record_intervention(self, conversation_id: UUID, intervention: Intervention) -> bool:
        """Store an intervention; called again when ``applied_at`` is set."""
        pass


class InMemoryRecorder(ConversationRecorder):
    """
    In-memory implementation of the recorder.

    Useful for tests and for hosts that only need records for the lifetime
    of the process.
    """

    def __init__(self):
        self._conversations: Dict[UUID, Conversation] = {}
        self._exchanges: Dict[UUID, List[Exchange]] = {}
        self._interventions: Dict[UUID, Dict[UUID, Intervention]] = {}

    async def record_conversation(self, conversation: Conversation) -> bool:
        # Header only; exchanges are tracked separately. Participants are frozen.
        self._conversations[conversation.id] = conversation.model_copy(
            update={"exchanges": [], "participants": list(conversation.participants)}
        )
        return True

    async def record_exchange(self, conversation_id: UUID, exchange: Exchange) -> bool:
        exchanges = self._exchanges.setdefault(conversation_id, [])
        if any(existing.id == exchange.id for existing in exchanges):
            return False
        exchanges.append(exchange)
        return True

    async def record_intervention(self, conversation_id: UUID, intervention: Intervention) -> bool:
        self._interventions.setdefault(conversation_id, {})[intervention.id] = deepcopy(intervention)
        return True

    def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def get_exchanges(self, conversation_id: UUID) -> List[Exchange]:
        return list(self._exchanges.get(conversation_id, []))

    def get_interventions(self, conversation_id: UUID) -> List[Intervention]:
        return list(self._interventions.get(conversation_id, {}).values())
