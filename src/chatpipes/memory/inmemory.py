"""
In-memory implementation of the Memory Store for ChatPipes.

This module provides the default raw utterance log. Snapshots are tuples of
frozen records, so a compression pass reading a snapshot is unaffected by
appends that happen while it runs.
"""

import threading
from typing import Dict, List, Optional, Tuple

from chatpipes.memory.base import MemoryStore
from chatpipes.protocol.models import RawUtterance


class InMemoryStore(MemoryStore):
    """
    In-memory implementation of the Memory Store.

    A single append order is kept across all participants so a full snapshot
    replays utterances exactly as they were logged. A lock guards the log for
    hosts that share one store between threads.
    """

    def __init__(self):
        """Initialize the in-memory store."""
        self._log: List[RawUtterance] = []
        self._by_participant: Dict[str, List[RawUtterance]] = {}
        self._lock = threading.RLock()

    def append(self, participant_id: str, text: str, role: str = "assistant") -> RawUtterance:
        utterance = RawUtterance(participant_id=participant_id, text=text, role=role)
        with self._lock:
            self._log.append(utterance)
            self._by_participant.setdefault(participant_id, []).append(utterance)
        return utterance

    def snapshot(self, participant_id: Optional[str] = None) -> Tuple[RawUtterance, ...]:
        with self._lock:
            if participant_id is None:
                return tuple(self._log)
            return tuple(self._by_participant.get(participant_id, []))

    def get_utterances(self, participant_id: str, limit: Optional[int] = None) -> List[RawUtterance]:
        with self._lock:
            utterances = list(self._by_participant.get(participant_id, []))
        if limit is not None:
            utterances = utterances[-limit:] if limit > 0 else []
        return utterances

    def participants(self) -> List[str]:
        with self._lock:
            return [pid for pid, utterances in self._by_participant.items() if utterances]

    def count(self, participant_id: Optional[str] = None) -> int:
        with self._lock:
            if participant_id is None:
                return len(self._log)
            return len(self._by_participant.get(participant_id, []))

    def wipe(self, participant_id: Optional[str] = None) -> int:
        with self._lock:
            if participant_id is None:
                removed = len(self._log)
                self._log = []
                self._by_participant = {}
                return removed

            removed = len(self._by_participant.pop(participant_id, []))
            self._log = [u for u in self._log if u.participant_id != participant_id]
            return removed
