"""
Base Memory Store interface for ChatPipes.

A memory store is the append-only log of raw utterances, filed per
participant. It may be shared by several conversations, so readers work on
snapshots rather than on the live log.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from chatpipes.protocol.models import RawUtterance


class MemoryStore(ABC):
    """
    Abstract base class for raw utterance storage.

    Utterances are never edited or removed individually; ``wipe`` is the only
    deletion path.
    """

    @abstractmethod
    def append(self, participant_id: str, text: str, role: str = "assistant") -> RawUtterance:
        """
        Append an utterance to a participant's log.

        Args:
            participant_id: Participant the utterance is filed under
            text: The utterance text
            role: Who produced it

        Returns:
            The stored RawUtterance
        """
        pass

    @abstractmethod
    def snapshot(self, participant_id: Optional[str] = None) -> Tuple[RawUtterance, ...]:
        """
        Take an immutable copy of the log.

        Args:
            participant_id: Restrict the snapshot to one participant

        Returns:
            Utterances in append order
        """
        pass

    @abstractmethod
    def get_utterances(self, participant_id: str, limit: Optional[int] = None) -> List[RawUtterance]:
        """
        Retrieve a participant's most recent utterances.

        Args:
            participant_id: The participant
            limit: Keep only the newest ``limit`` utterances

        Returns:
            Utterances in append order
        """
        pass

    @abstractmethod
    def participants(self) -> List[str]:
        """List participant ids with at least one utterance."""
        pass

    @abstractmethod
    def count(self, participant_id: Optional[str] = None) -> int:
        """Count utterances, optionally for a single participant."""
        pass

    @abstractmethod
    def wipe(self, participant_id: Optional[str] = None) -> int:
        """
        Delete utterances.

        Args:
            participant_id: Only wipe this participant's log; everything if None

        Returns:
            Number of utterances removed
        """
        pass
