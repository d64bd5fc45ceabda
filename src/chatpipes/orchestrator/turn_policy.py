"""
Turn Policy implementation for ChatPipes.

This module defines how the next speaker is chosen. Two participants strictly
alternate; larger groups rotate round-robin in participant order, so the
previous speaker is never chosen twice in a row.
"""

from enum import Enum
from typing import Dict, List, Optional


class TurnPolicy(str, Enum):
    """Turn-taking policies for conversation management."""

    ALTERNATING = "alternating"    # Two participants take turns
    ROUND_ROBIN = "round_robin"    # Participants speak in a fixed order

    @classmethod
    def for_group(cls, size: int) -> "TurnPolicy":
        return cls.ALTERNATING if size == 2 else cls.ROUND_ROBIN


class TurnManager:
    """
    Manages turn-taking between participants.

    The TurnManager is responsible for:
    - Determining whose turn it is to speak
    - Advancing turns after each completed exchange
    - Tracking turn counts per participant
    """

    def __init__(self, participant_ids: List[str], start_with: Optional[str] = None):
        """
        Initialize the turn manager.

        Args:
            participant_ids: Participant ids in speaking order
            start_with: Participant that speaks first (defaults to the first one)
        """
        if not participant_ids:
            raise ValueError("TurnManager requires at least one participant")
        if start_with is not None and start_with not in participant_ids:
            raise ValueError(f"Unknown starting participant: {start_with}")

        self.participant_ids = list(participant_ids)
        self.policy = TurnPolicy.for_group(len(self.participant_ids))
        self.start_with = start_with or self.participant_ids[0]

        # Track how many turns each participant has taken
        self.turns_taken: Dict[str, int] = {pid: 0 for pid in self.participant_ids}

        # Track the ID of the participant who spoke last
        self.last_speaker: Optional[str] = None

    def get_next_speaker(self) -> str:
        """
        Get the ID of the participant whose turn it is to speak.

        Returns:
            ``start_with`` before the first turn, otherwise the successor of the
            last speaker in participant order
        """
        if self.last_speaker is None:
            return self.start_with
        position = self.participant_ids.index(self.last_speaker)
        return self.participant_ids[(position + 1) % len(self.participant_ids)]

    def get_addressee(self, speaker_id: str) -> Optional[str]:
        """The other participant in a two-party conversation, else None."""
        if self.policy != TurnPolicy.ALTERNATING:
            return None
        return next(pid for pid in self.participant_ids if pid != speaker_id)

    def record_turn(self, participant_id: str) -> None:
        """
        Record that a participant has taken their turn.

        Args:
            participant_id: ID of the participant who spoke
        """
        if participant_id not in self.turns_taken:
            raise ValueError(f"Unknown participant: {participant_id}")

        self.turns_taken[participant_id] += 1
        self.last_speaker = participant_id
