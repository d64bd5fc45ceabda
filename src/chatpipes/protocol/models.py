"""
Data Model for ChatPipes

This module defines the records exchanged between the turn engine, the memory
subsystem and external collaborators. It covers:
- Participants with their persona and capability descriptors
- Conversation configuration and lifecycle status
- Exchanges (one completed prompt/response pair per turn)
- Operator interventions and the prompt modifications they cause
- Raw utterances and the compressed memory items derived from them
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Target value addressing every participant
ALL_TARGET = "all"

# Exchange recipient used when a group conversation has no single addressee
BROADCAST = "broadcast"

RESERVED_PARTICIPANT_IDS = {ALL_TARGET, BROADCAST}


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    IDLE = "idle"          # Created, not started
    RUNNING = "running"    # Turn loop active
    PAUSED = "paused"      # Loop waits between turns
    STOPPED = "stopped"    # Terminal: ended normally or on request
    ERRORED = "errored"    # Terminal: dispatch failed beyond retries


class SynthesisStrategy(str, Enum):
    """How context from other participants is combined in group conversations."""

    RECENT = "recent"      # Only the immediately preceding exchange
    ALL = "all"            # Full rehydration summaries of every other participant
    WEIGHTED = "weighted"  # Pooled items biased toward confidence and recency


class InterventionKind(str, Enum):
    """Kinds of operator interventions."""

    SIDE_QUESTION = "side_question"  # Aside the speaker must address
    CORRECTION = "correction"        # Authoritative factual amendment
    DIRECTION = "direction"          # Overrides the topic framing
    PAUSE = "pause"                  # Sets the pause flag
    RESUME = "resume"                # Clears the pause flag

    @property
    def is_control(self) -> bool:
        """Whether this kind changes the loop instead of the prompt."""
        return self in (InterventionKind.PAUSE, InterventionKind.RESUME)


class InterventionPriority(str, Enum):
    """Priority levels for interventions."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort key: lower ranks are applied first."""
        return {
            InterventionPriority.HIGH: 0,
            InterventionPriority.MEDIUM: 1,
            InterventionPriority.LOW: 2,
        }[self]


class MemoryCategory(str, Enum):
    """Categories of compressed memory."""

    FACT = "fact"
    JOKE = "joke"
    EMOTION = "emotion"
    MOTIF = "motif"
    STYLE = "style"


class CompressionKind(str, Enum):
    """How a compressed item relates to the raw utterances behind it."""

    AGGREGATED = "aggregated"  # Lossy summary of several utterances
    VERBATIM = "verbatim"      # Exact wording
    CANONICAL = "canonical"    # Locked phrase reused as-is
    ROLLING = "rolling"        # Running average
    VECTOR = "vector"          # Numeric profile


class Persona(BaseModel):
    """Behavioral instructions and generation knobs for a participant."""

    model_config = ConfigDict(frozen=True)

    instructions: str = Field(default="", description="Standing instructions for the agent")
    behavior_style: Optional[str] = Field(None, description="Short description of expressive style")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature hint")
    max_tokens: Optional[int] = Field(None, gt=0, description="Response length hint")


class AgentCapabilities(BaseModel):
    """What the agent backing a participant supports."""

    model_config = ConfigDict(frozen=True)

    supports_streaming: bool = Field(default=False, description="Whether responses can be streamed")
    requests_per_minute: Optional[int] = Field(None, gt=0, description="Rate limit, if known")
    max_prompt_chars: Optional[int] = Field(None, gt=0, description="Longest prompt the agent accepts")


class Participant(BaseModel):
    """
    A conversational entity backed by an external agent interface.

    Participants are immutable for the lifetime of a conversation. The agent
    handle is carried alongside the identity but never serialized.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Unique identifier for the participant")
    name: str = Field(..., description="Display name of the participant")
    persona: Persona = Field(default_factory=Persona, description="Persona used to build prompts")
    capabilities: AgentCapabilities = Field(default_factory=AgentCapabilities, description="Agent capability descriptor")
    agent: Optional[Any] = Field(None, exclude=True, repr=False, description="AgentInterface used for dispatch")

    @field_validator('id')
    def id_must_be_usable(cls, v):
        """Validate that the id is non-empty and not reserved."""
        if not v or not v.strip():
            raise ValueError("Participant id cannot be empty")
        if v in RESERVED_PARTICIPANT_IDS:
            raise ValueError(f"Participant id '{v}' is reserved")
        return v

    @field_validator('name')
    def name_must_not_be_empty(cls, v):
        """Validate that the name is not empty."""
        if not v or not v.strip():
            raise ValueError("Participant name cannot be empty")
        return v.strip()


class ConversationConfig(BaseModel):
    """Configuration for a conversation."""

    max_rounds: int = Field(default=10, ge=0, description="Number of turns before the loop stops")
    turn_delay: float = Field(default=1.0, ge=0.0, description="Seconds to wait between turns")
    start_with: Optional[str] = Field(None, description="Participant id that speaks first (defaults to the first participant)")
    synthesis_strategy: SynthesisStrategy = Field(default=SynthesisStrategy.RECENT, description="Context strategy for more than two participants")
    opening_topic: Optional[str] = Field(None, description="Topic framing for the first turn")
    max_interventions_per_turn: int = Field(default=1, ge=1, description="Cap on interventions applied in one turn")
    rehydration_budget: int = Field(default=800, ge=0, description="Character budget for each memory summary")
    dispatch_timeout: float = Field(default=60.0, gt=0.0, description="Seconds allowed for one agent call")
    max_retries: int = Field(default=3, ge=0, description="Retries after a failed dispatch")
    retry_backoff: float = Field(default=1.0, ge=0.0, description="Seconds before the first retry")
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth per retry")
    retry_backoff_max: float = Field(default=30.0, ge=0.0, description="Upper bound on a single backoff")
    compress_every_n_turns: int = Field(default=1, ge=0, description="Run compression every N turns (0 = on demand only)")
    weighted_recency_weight: float = Field(default=0.7, ge=0.0, le=1.0, description="Recency share of the weighted strategy score")


class PromptModification(BaseModel):
    """Before/after record of an intervention applied to a prompt."""

    model_config = ConfigDict(frozen=True)

    intervention_id: UUID = Field(..., description="Intervention that caused the modification")
    original_prompt: str = Field(..., description="Prompt before the intervention")
    modified_prompt: str = Field(..., description="Prompt after the intervention")
    applied_at: datetime = Field(default_factory=utcnow, description="When it was applied")


class Intervention(BaseModel):
    """An out-of-band operator instruction injected into the turn loop."""

    id: UUID = Field(default_factory=uuid4, description="Unique identifier for the intervention")
    kind: InterventionKind = Field(default=InterventionKind.SIDE_QUESTION, description="How the intervention acts")
    target: str = Field(default=ALL_TARGET, description="Participant id or 'all'")
    priority: InterventionPriority = Field(default=InterventionPriority.MEDIUM, description="Application priority")
    payload: str = Field(default="", description="Free-text instruction")
    created_at: datetime = Field(default_factory=utcnow, description="When the intervention was created")
    applied_at: Optional[datetime] = Field(None, description="When the intervention was applied")

    @field_validator('payload')
    def payload_required_for_prompt_kinds(cls, v, info):
        """Prompt-affecting kinds need text to splice in."""
        kind = info.data.get("kind")
        if kind is not None and not kind.is_control and not v.strip():
            raise ValueError(f"Intervention of kind '{kind.value}' requires a payload")
        return v

    @property
    def applied(self) -> bool:
        return self.applied_at is not None

    def targets(self, participant_id: str) -> bool:
        """Whether this intervention is due for the given participant."""
        return self.target == ALL_TARGET or self.target == participant_id


class ExchangeMetadata(BaseModel):
    """Measurements attached to a completed exchange."""

    model_config = ConfigDict(frozen=True)

    duration_ms: float = Field(default=0.0, description="Wall time spent in dispatch")
    token_estimate: int = Field(default=0, description="Rough token count of prompt plus response")
    attempts: int = Field(default=1, description="Dispatch attempts including retries")
    intervention_id: Optional[UUID] = Field(None, description="Intervention applied to this prompt, if any")


class Exchange(BaseModel):
    """One completed prompt/response pair. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4, description="Unique identifier for the exchange")
    from_id: str = Field(..., description="Participant that produced the response")
    to_id: str = Field(..., description="Addressee participant id, or 'broadcast'")
    prompt: str = Field(..., description="Resolved prompt text actually sent")
    response: str = Field(..., description="Response text received")
    round: int = Field(..., ge=1, description="Round in which the exchange completed")
    timestamp: datetime = Field(default_factory=utcnow, description="When the exchange completed")
    metadata: ExchangeMetadata = Field(default_factory=ExchangeMetadata, description="Dispatch measurements")
    prompt_modification: Optional[PromptModification] = Field(None, description="Intervention splice applied to the prompt")


class Conversation(BaseModel):
    """One orchestrated multi-turn exchange among participants."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: UUID = Field(default_factory=uuid4, description="Unique identifier for the conversation")
    participants: List[Participant] = Field(default_factory=list, description="Ordered participants")
    config: ConversationConfig = Field(default_factory=ConversationConfig, description="Conversation configuration")
    round: int = Field(default=0, description="Completed rounds")
    current_speaker: Optional[str] = Field(None, description="Participant currently (or last) speaking")
    status: ConversationStatus = Field(default=ConversationStatus.IDLE, description="Lifecycle status")
    exchanges: List[Exchange] = Field(default_factory=list, description="Append-only exchange history")
    created_at: datetime = Field(default_factory=utcnow, description="When the conversation was created")
    started_at: Optional[datetime] = Field(None, description="When the loop started")
    ended_at: Optional[datetime] = Field(None, description="When the loop ended")

    def get_participant(self, participant_id: str) -> Optional[Participant]:
        for participant in self.participants:
            if participant.id == participant_id:
                return participant
        return None


class Transcript(BaseModel):
    """Read-only view of a conversation's history."""

    conversation_id: UUID
    exchanges: List[Exchange] = Field(default_factory=list)
    interventions: List[Intervention] = Field(default_factory=list)
    prompt_modifications: List[PromptModification] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    total_rounds: int = 0
    total_exchanges: int = 0


class RawUtterance(BaseModel):
    """A single thing a participant said, as logged before compression."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4, description="Unique identifier for the utterance")
    participant_id: str = Field(..., description="Participant the utterance is filed under")
    text: str = Field(..., description="Utterance text")
    timestamp: datetime = Field(default_factory=utcnow, description="When it was logged")
    role: str = Field(default="assistant", description="Who produced it (assistant, user, system)")


class StyleVector(BaseModel):
    """Continuously updated numeric profile of a participant's expression."""

    verbosity: float = Field(default=0.5, ge=0.0, le=1.0)
    metaphor_affinity: float = Field(default=0.5, ge=0.0, le=1.0)
    formality: float = Field(default=0.5, ge=0.0, le=1.0)
    creativity: float = Field(default=0.5, ge=0.0, le=1.0)
    surrealism: float = Field(default=0.5, ge=0.0, le=1.0)

    DIMENSIONS: ClassVar[Tuple[str, ...]] = ("verbosity", "metaphor_affinity", "formality", "creativity", "surrealism")

    def as_array(self) -> np.ndarray:
        return np.array([getattr(self, name) for name in self.DIMENSIONS], dtype=float)

    @classmethod
    def from_array(cls, values: np.ndarray) -> "StyleVector":
        clipped = np.clip(values, 0.0, 1.0)
        return cls(**{name: round(float(value), 6) for name, value in zip(cls.DIMENSIONS, clipped)})

    def describe(self) -> str:
        """Render the dominant traits as a short phrase."""
        traits = []
        if self.verbosity > 0.7:
            traits.append("verbose")
        if self.verbosity < 0.3:
            traits.append("concise")
        if self.metaphor_affinity > 0.7:
            traits.append("metaphorical")
        if self.formality > 0.7:
            traits.append("formal")
        if self.formality < 0.3:
            traits.append("casual")
        if self.creativity > 0.7:
            traits.append("creative")
        if self.surrealism > 0.7:
            traits.append("surreal")
        return ", ".join(traits) if traits else "balanced"


class CompressedMemoryItem(BaseModel):
    """A typed, aggregated unit of long-term context."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(..., description="Deterministic identifier derived from participant, type and key")
    participant_id: str = Field(..., description="Participant the memory belongs to")
    type: MemoryCategory = Field(..., description="Memory category")
    content: str = Field(..., description="Summary or verbatim text depending on type")
    confidence: float = Field(..., ge=0.0, le=1.0, description="Confidence in the memory")
    count: int = Field(default=1, ge=0, description="Raw utterances folded into this item")
    last_used: datetime = Field(..., description="Timestamp of the newest contributing utterance")
    compression: CompressionKind = Field(..., description="How the item was produced")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Type-specific details")
