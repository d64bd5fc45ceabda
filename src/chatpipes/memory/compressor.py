"""
Memory compression for ChatPipes.

The compressor sits on top of a MemoryStore. Every ingested utterance is
classified and folded into the speaker's style vector; ``compress`` then turns
the raw log into a small set of typed CompressedMemoryItems, and
``get_rehydration_summary`` renders those items into a bounded block of prompt
context.

Compression is a pure function of a snapshot of the raw log, the
classification labels and the style vectors, with one exception: a motif that
reaches the canonical threshold is locked, and its wording is reused by every
later pass.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID, NAMESPACE_URL, uuid5

from pydantic import BaseModel, Field

from chatpipes.memory.base import MemoryStore
from chatpipes.memory.classifier import UtteranceClassifier, UtteranceLabel, keywords
from chatpipes.memory.inmemory import InMemoryStore
from chatpipes.protocol.models import (
    CompressedMemoryItem,
    CompressionKind,
    MemoryCategory,
    RawUtterance,
    StyleVector,
    utcnow
)

_ITEM_NAMESPACE = uuid5(NAMESPACE_URL, "chatpipes/memory")

# Passes kept in the compression history
HISTORY_LIMIT = 10


class CompressionConfig(BaseModel):
    """Tunable thresholds for memory compression."""

    fact_threshold: int = Field(default=3, ge=1, description="Facts folded into one aggregated item")
    joke_preservation_threshold: int = Field(default=2, ge=1, description="Repeats before a joke is preserved")
    emotion_decay_rate: float = Field(default=0.3, ge=0.0, le=1.0, description="Weight of a new emotion observation")
    metaphor_canonical_threshold: int = Field(default=2, ge=1, description="Occurrences before a motif is locked")
    style_vector_update_rate: float = Field(default=0.3, ge=0.0, le=1.0, description="EMA rate for style vectors")
    default_budget: int = Field(default=800, ge=0, description="Default rehydration summary size in characters")
    max_items_per_participant: int = Field(default=50, ge=1, description="Live items kept per participant before pruning")
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Items below this confidence are pruned")
    recency_weight: float = Field(default=0.7, ge=0.0, le=1.0, description="Share of the pruning score given to recency")


def _item_id(participant_id: str, category: MemoryCategory, key: str) -> UUID:
    return uuid5(_ITEM_NAMESPACE, f"{participant_id}:{category.value}:{key}")


def _confidence(value: float) -> float:
    return round(min(1.0, max(0.0, value)), 6)


def priority_scores(items: Sequence[CompressedMemoryItem], recency_weight: float) -> Dict[UUID, float]:
    """
    Score items by ``recency_weight * recency + (1 - recency_weight) * confidence``.

    Recency is the item's position between the oldest (0) and the newest (1)
    item in the collection.
    """
    if not items:
        return {}
    times = [item.last_used.timestamp() for item in items]
    oldest, newest = min(times), max(times)
    span = newest - oldest

    scores = {}
    for item in items:
        recency = (item.last_used.timestamp() - oldest) / span if span else 1.0
        scores[item.id] = recency_weight * recency + (1 - recency_weight) * item.confidence
    return scores


class MemoryCompressor:
    """
    Classifies, compresses and rehydrates participant memory.

    The MemoryCompressor is responsible for:
    - Appending utterances to the raw log and labelling them
    - Maintaining a style vector per participant
    - Folding the raw log into typed compressed items
    - Rendering budget-bounded summaries for prompt construction
    """

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        config: Optional[CompressionConfig] = None,
        classifier: Optional[UtteranceClassifier] = None
    ):
        """
        Initialize the compressor.

        Args:
            store: Raw utterance log (a fresh InMemoryStore if not provided)
            config: Compression thresholds
            classifier: Utterance classifier
        """
        self.store = store if store is not None else InMemoryStore()
        self.config = config or CompressionConfig()
        self.classifier = classifier or UtteranceClassifier()

        self._labels: Dict[UUID, UtteranceLabel] = {}
        self._seen_texts: Dict[str, Dict[str, List[UUID]]] = {}
        self._style_vectors: Dict[str, StyleVector] = {}
        self._style_counts: Dict[str, int] = {}
        self._canonical_motifs: Dict[Tuple[str, str], str] = {}
        self._items: List[CompressedMemoryItem] = []
        self._history: List[Dict[str, Any]] = []
        self._lock = threading.RLock()

        self.logger = logging.getLogger("chatpipes.memory")

    def ingest(self, participant_id: str, text: Any, role: str = "assistant") -> Optional[RawUtterance]:
        """
        Log an utterance, classify it and update the speaker's style.

        Args:
            participant_id: Speaker the utterance is filed under
            text: The utterance; empty or non-string values are ignored
            role: Who produced it

        Returns:
            The stored utterance, or None if it was ignored
        """
        if not isinstance(text, str) or not text.strip():
            self.logger.debug(f"Ignoring empty utterance for {participant_id}")
            return None

        with self._lock:
            utterance = self.store.append(participant_id, text, role)
            self._labels[utterance.id] = self._label(utterance)
            self._observe_style(participant_id, text)
        return utterance

    def _label(self, utterance: RawUtterance) -> UtteranceLabel:
        previous = self._seen_texts.setdefault(utterance.participant_id, {}).setdefault(utterance.text, [])
        previous.append(utterance.id)

        try:
            if len(previous) > 1:
                label = self.classifier.joke(utterance.text)
                for earlier_id in previous[:-1]:
                    self._labels[earlier_id] = label
                return label
            return self.classifier.classify(utterance.text)
        except Exception as e:
            self.logger.debug(f"Classification failed for utterance {utterance.id}, keeping style only: {e}")
            return UtteranceLabel(category=MemoryCategory.STYLE)

    def _observe_style(self, participant_id: str, text: str) -> None:
        current = self._style_vectors.get(participant_id, StyleVector())
        try:
            observed = self.classifier.observe_style(text)
        except Exception as e:
            self.logger.debug(f"Style observation failed for {participant_id}: {e}")
            return

        rate = self.config.style_vector_update_rate
        self._style_vectors[participant_id] = StyleVector.from_array(
            rate * observed + (1 - rate) * current.as_array()
        )
        self._style_counts[participant_id] = self._style_counts.get(participant_id, 0) + 1

    def compress(self) -> List[CompressedMemoryItem]:
        """
        Rebuild the compressed items from the current raw log.

        Returns:
            All compressed items, grouped by participant in first-seen order
        """
        with self._lock:
            snapshot = self.store.snapshot()
            labels = dict(self._labels)
            styles = dict(self._style_vectors)

            by_participant: Dict[str, List[RawUtterance]] = {}
            for utterance in snapshot:
                by_participant.setdefault(utterance.participant_id, []).append(utterance)

            items: List[CompressedMemoryItem] = []
            for participant_id, utterances in by_participant.items():
                items.extend(self._compress_participant(participant_id, utterances, labels, styles))

            self._items = items
            self._history.append({
                "compressed_at": utcnow(),
                "raw_count": len(snapshot),
                "item_count": len(items),
                "ratio": len(items) / len(snapshot) if snapshot else 0.0,
            })
            self._history = self._history[-HISTORY_LIMIT:]

        self.logger.debug(f"Compressed {len(snapshot)} utterances into {len(items)} items")
        return list(items)

    def _compress_participant(
        self,
        participant_id: str,
        utterances: List[RawUtterance],
        labels: Dict[UUID, UtteranceLabel],
        styles: Dict[str, StyleVector]
    ) -> List[CompressedMemoryItem]:
        grouped: Dict[MemoryCategory, List[Tuple[RawUtterance, UtteranceLabel]]] = {
            category: [] for category in MemoryCategory
        }
        for utterance in utterances:
            label = labels.get(utterance.id)
            if label is None:
                # Logged through the store directly or by another compressor
                label = self.classifier.classify(utterance.text)
            grouped[label.category].append((utterance, label))

        items: List[CompressedMemoryItem] = []
        items.extend(self._compress_facts(participant_id, [u for u, _ in grouped[MemoryCategory.FACT]]))
        items.extend(self._compress_jokes(participant_id, grouped[MemoryCategory.JOKE]))
        items.extend(self._compress_emotions(participant_id, grouped[MemoryCategory.EMOTION]))
        items.extend(self._compress_motifs(participant_id, grouped[MemoryCategory.MOTIF]))
        items.append(self._compress_style(participant_id, utterances, styles.get(participant_id, StyleVector())))
        return self._cap(participant_id, items)

    def _cap(self, participant_id: str, items: List[CompressedMemoryItem]) -> List[CompressedMemoryItem]:
        """
        Bound a participant's live items.

        Locked motifs and the style item always stay. Other items below
        ``min_confidence`` or beyond ``max_items_per_participant`` (lowest
        priority score first) are folded into one archived item per category,
        so their occurrence counts survive.
        """
        config = self.config
        pinned = {
            item.id for item in items
            if item.type == MemoryCategory.STYLE or item.compression == CompressionKind.CANONICAL
        }
        candidates = [item for item in items if item.id not in pinned]
        scores = priority_scores(candidates, config.recency_weight)

        ranked = sorted(
            (item for item in candidates if item.confidence >= config.min_confidence),
            key=lambda item: (-scores[item.id], str(item.id))
        )
        room = max(0, config.max_items_per_participant - len(pinned))
        kept = pinned | {item.id for item in ranked[:room]}

        pruned = [item for item in items if item.id not in kept]
        if not pruned:
            return items

        self.logger.debug(f"Archived {len(pruned)} low-priority memory items for {participant_id}")
        return [item for item in items if item.id in kept] + self._archive(participant_id, pruned)

    def _archive(self, participant_id: str, pruned: List[CompressedMemoryItem]) -> List[CompressedMemoryItem]:
        by_category: Dict[MemoryCategory, List[CompressedMemoryItem]] = {}
        for item in pruned:
            by_category.setdefault(item.type, []).append(item)

        archived = []
        for category, group in by_category.items():
            count = sum(item.count for item in group)
            archived.append(CompressedMemoryItem(
                id=_item_id(participant_id, category, "archive"),
                participant_id=participant_id,
                type=category,
                content=f"Earlier {category.value} memories ({count})",
                confidence=_confidence(min(item.confidence for item in group)),
                count=count,
                last_used=max(item.last_used for item in group),
                compression=CompressionKind.AGGREGATED,
                metadata={"archived": True, "items": len(group)}
            ))
        return archived

    def _compress_facts(self, participant_id: str, facts: List[RawUtterance]) -> List[CompressedMemoryItem]:
        threshold = self.config.fact_threshold
        items = []
        batches = len(facts) // threshold

        for index in range(batches):
            batch = facts[index * threshold:(index + 1) * threshold]
            words = keywords([u.text for u in batch])
            description = ", ".join(words) if words else "general statements"
            items.append(CompressedMemoryItem(
                id=_item_id(participant_id, MemoryCategory.FACT, f"batch:{index}"),
                participant_id=participant_id,
                type=MemoryCategory.FACT,
                content=f"Known facts ({len(batch)}): {description}",
                confidence=_confidence(0.5 + 0.1 * len(batch)),
                count=len(batch),
                last_used=batch[-1].timestamp,
                compression=CompressionKind.AGGREGATED,
                metadata={"keywords": words, "first_seen": batch[0].timestamp.isoformat()}
            ))

        for utterance in facts[batches * threshold:]:
            items.append(CompressedMemoryItem(
                id=_item_id(participant_id, MemoryCategory.FACT, str(utterance.id)),
                participant_id=participant_id,
                type=MemoryCategory.FACT,
                content=utterance.text,
                confidence=0.5,
                count=1,
                last_used=utterance.timestamp,
                compression=CompressionKind.VERBATIM,
                metadata={"first_seen": utterance.timestamp.isoformat()}
            ))
        return items

    def _compress_jokes(
        self,
        participant_id: str,
        jokes: List[Tuple[RawUtterance, UtteranceLabel]]
    ) -> List[CompressedMemoryItem]:
        groups: Dict[str, List[Tuple[RawUtterance, UtteranceLabel]]] = {}
        for utterance, label in jokes:
            groups.setdefault(utterance.text, []).append((utterance, label))

        items = []
        for text, group in groups.items():
            count = len(group)
            preserved = count >= self.config.joke_preservation_threshold
            items.append(CompressedMemoryItem(
                id=_item_id(participant_id, MemoryCategory.JOKE, text),
                participant_id=participant_id,
                type=MemoryCategory.JOKE,
                content=text,
                confidence=_confidence(0.4 + 0.15 * count) if preserved else 0.3,
                count=count,
                last_used=group[-1][0].timestamp,
                compression=CompressionKind.VERBATIM,
                metadata={
                    "mood": group[-1][1].mood,
                    "preserved": preserved,
                    "first_seen": group[0][0].timestamp.isoformat(),
                }
            ))
        return items

    def _compress_emotions(
        self,
        participant_id: str,
        emotions: List[Tuple[RawUtterance, UtteranceLabel]]
    ) -> List[CompressedMemoryItem]:
        decay = self.config.emotion_decay_rate
        levels: Dict[str, float] = {}
        counts: Dict[str, int] = {}
        last_seen: Dict[str, RawUtterance] = {}

        for utterance, label in emotions:
            tone = label.tone or "neutral"
            for known in levels:
                observed = label.intensity if known == tone else 0.0
                levels[known] = decay * observed + (1 - decay) * levels[known]
            if tone not in levels:
                levels[tone] = label.intensity
            counts[tone] = counts.get(tone, 0) + 1
            last_seen[tone] = utterance

        if not levels:
            return []

        dominant = max(levels, key=lambda tone: levels[tone])
        items = []
        for tone, level in levels.items():
            items.append(CompressedMemoryItem(
                id=_item_id(participant_id, MemoryCategory.EMOTION, tone),
                participant_id=participant_id,
                type=MemoryCategory.EMOTION,
                content=f"Emotional tone: {tone}",
                confidence=_confidence(level),
                count=counts[tone],
                last_used=last_seen[tone].timestamp,
                compression=CompressionKind.ROLLING,
                metadata={"tone": tone, "intensity": _confidence(level), "dominant": tone == dominant}
            ))
        return items

    def _compress_motifs(
        self,
        participant_id: str,
        motifs: List[Tuple[RawUtterance, UtteranceLabel]]
    ) -> List[CompressedMemoryItem]:
        groups: Dict[str, List[Tuple[RawUtterance, UtteranceLabel]]] = {}
        for utterance, label in motifs:
            key = label.motif_key or " ".join(utterance.text.lower().split())
            groups.setdefault(key, []).append((utterance, label))

        items = []
        for key, group in groups.items():
            count = len(group)
            locked_key = (participant_id, key)
            if locked_key not in self._canonical_motifs and count >= self.config.metaphor_canonical_threshold:
                self._canonical_motifs[locked_key] = group[0][1].motif_phrase or group[0][0].text
                self.logger.debug(f"Locked canonical motif for {participant_id}: {key}")

            locked = locked_key in self._canonical_motifs
            phrase = self._canonical_motifs[locked_key] if locked else (group[0][1].motif_phrase or group[0][0].text)
            items.append(CompressedMemoryItem(
                id=_item_id(participant_id, MemoryCategory.MOTIF, key),
                participant_id=participant_id,
                type=MemoryCategory.MOTIF,
                content=phrase,
                confidence=_confidence(0.4 + 0.2 * count),
                count=count,
                last_used=group[-1][0].timestamp,
                compression=CompressionKind.CANONICAL if locked else CompressionKind.VERBATIM,
                metadata={"key": key, "locked": locked, "first_seen": group[0][0].timestamp.isoformat()}
            ))
        return items

    def _compress_style(
        self,
        participant_id: str,
        utterances: List[RawUtterance],
        vector: StyleVector
    ) -> CompressedMemoryItem:
        count = len(utterances)
        return CompressedMemoryItem(
            id=_item_id(participant_id, MemoryCategory.STYLE, "vector"),
            participant_id=participant_id,
            type=MemoryCategory.STYLE,
            content=f"Style: {vector.describe()}",
            confidence=_confidence(0.3 + 0.1 * count),
            count=count,
            last_used=utterances[-1].timestamp,
            compression=CompressionKind.VECTOR,
            metadata={"vector": vector.model_dump()}
        )

    def get_items(
        self,
        participant_id: Optional[str] = None,
        category: Optional[MemoryCategory] = None
    ) -> List[CompressedMemoryItem]:
        """Compressed items from the latest pass, optionally filtered."""
        with self._lock:
            items = list(self._items)
        if participant_id is not None:
            items = [item for item in items if item.participant_id == participant_id]
        if category is not None:
            items = [item for item in items if item.type == category]
        return items

    def get_style_vector(self, participant_id: str) -> StyleVector:
        """Current style vector (neutral defaults for unknown participants)."""
        with self._lock:
            return self._style_vectors.get(participant_id, StyleVector()).model_copy()

    def get_rehydration_summary(self, participant_id: str, budget: Optional[int] = None) -> str:
        """
        Render a participant's compressed memory as prompt context.

        Tiers are emitted in order: canonical motifs, jokes, facts, emotional
        tone, style. Within a tier items are ordered by confidence, then
        recency. A line that would exceed the budget is skipped, and later
        shorter lines may still fit. Archived items are never rendered.

        Args:
            participant_id: Whose memory to render
            budget: Maximum length in characters (config default if None)

        Returns:
            The summary, or "" if there is nothing to say
        """
        limit = self.config.default_budget if budget is None else budget
        items = [item for item in self.get_items(participant_id) if not item.metadata.get("archived")]

        tiers = [
            [item for item in items if item.type == MemoryCategory.MOTIF and item.compression == CompressionKind.CANONICAL],
            [item for item in items if item.type == MemoryCategory.JOKE],
            [item for item in items if item.type == MemoryCategory.FACT],
            [item for item in items if item.type == MemoryCategory.EMOTION],
            [item for item in items if item.type == MemoryCategory.STYLE],
        ]

        lines = []
        for tier in tiers:
            tier.sort(key=lambda item: (-item.confidence, -item.last_used.timestamp()))
            lines.extend(self._render(item) for item in tier)
        return self._fit(lines, limit)

    def get_weighted_summary(
        self,
        participant_ids: Sequence[str],
        budget: Optional[int] = None,
        recency_weight: float = 0.7
    ) -> str:
        """
        Render a pooled summary across several participants.

        Items are scored ``recency_weight * recency + (1 - recency_weight) * confidence``
        where recency is the item's position between the oldest (0) and the
        newest (1) item in the pool.

        Args:
            participant_ids: Participants whose items are pooled
            budget: Maximum length in characters (config default if None)
            recency_weight: Share of the score given to recency

        Returns:
            The summary, or "" if the pool is empty
        """
        limit = self.config.default_budget if budget is None else budget
        wanted = set(participant_ids)
        pool = [
            item for item in self.get_items()
            if item.participant_id in wanted and not item.metadata.get("archived")
        ]
        if not pool:
            return ""

        scores = priority_scores(pool, recency_weight)
        pool.sort(key=lambda item: (-scores[item.id], str(item.id)))
        return self._fit([f"[{item.participant_id}] {self._render(item)}" for item in pool], limit)

    def _render(self, item: CompressedMemoryItem) -> str:
        if item.type == MemoryCategory.MOTIF:
            return f"Recurring image: {item.content}"
        if item.type == MemoryCategory.JOKE:
            return f"Running joke (x{item.count}): \"{item.content}\""
        if item.type == MemoryCategory.FACT and item.compression == CompressionKind.VERBATIM:
            return f"Fact: {item.content}"
        if item.type == MemoryCategory.EMOTION:
            marker = " [dominant]" if item.metadata.get("dominant") else ""
            return f"{item.content} ({item.confidence:.2f}){marker}"
        return item.content

    def _fit(self, lines: List[str], budget: int) -> str:
        kept: List[str] = []
        length = 0
        for line in lines:
            added = len(line) + (1 if kept else 0)
            if length + added > budget:
                continue
            kept.append(line)
            length += added
        return "\n".join(kept)

    def get_compression_stats(self) -> Dict[str, Any]:
        """Counts for the latest pass plus the recent compression history."""
        with self._lock:
            items = list(self._items)
            by_category = {category.value: 0 for category in MemoryCategory}
            for item in items:
                by_category[item.type.value] += 1
            raw_count = self.store.count()
            return {
                "raw_count": raw_count,
                "compressed_count": len(items),
                "ratio": len(items) / raw_count if raw_count else 0.0,
                "by_category": by_category,
                "canonical_motifs": len(self._canonical_motifs),
                "participants": len(self._style_vectors),
                "style_observations": sum(self._style_counts.values()),
                "history": [dict(record) for record in self._history],
            }

    def wipe(self, participant_id: Optional[str] = None) -> int:
        """
        Forget raw and compressed memory.

        Args:
            participant_id: Only forget this participant; everything if None

        Returns:
            Number of raw utterances removed
        """
        with self._lock:
            if participant_id is None:
                removed = self.store.wipe()
                self._labels = {}
                self._seen_texts = {}
                self._style_vectors = {}
                self._style_counts = {}
                self._canonical_motifs = {}
                self._items = []
                self._history = []
            else:
                doomed = {u.id for u in self.store.snapshot(participant_id)}
                removed = self.store.wipe(participant_id)
                self._labels = {uid: label for uid, label in self._labels.items() if uid not in doomed}
                self._seen_texts.pop(participant_id, None)
                self._style_vectors.pop(participant_id, None)
                self._style_counts.pop(participant_id, None)
                self._canonical_motifs = {
                    key: phrase for key, phrase in self._canonical_motifs.items() if key[0] != participant_id
                }
                self._items = [item for item in self._items if item.participant_id != participant_id]

        self.logger.info(f"Wiped {removed} utterances" + (f" for {participant_id}" if participant_id else ""))
        return removed
