"""
Protocol layer for ChatPipes

Data model, observer events and the recorder contract shared by the turn
engine, the memory subsystem and external collaborators.
"""

from chatpipes.protocol.models import (
    ALL_TARGET,
    BROADCAST,
    AgentCapabilities,
    CompressedMemoryItem,
    CompressionKind,
    Conversation,
    ConversationConfig,
    ConversationStatus,
    Exchange,
    ExchangeMetadata,
    Intervention,
    InterventionKind,
    InterventionPriority,
    MemoryCategory,
    Participant,
    Persona,
    PromptModification,
    RawUtterance,
    StyleVector,
    SynthesisStrategy,
    Transcript
)
from chatpipes.protocol.events import (
    ErrorEvent,
    Event,
    InterventionAddedEvent,
    InterventionAppliedEvent,
    StatusChangedEvent,
    TurnEndEvent,
    TurnStartEvent
)
from chatpipes.protocol.observer_bus import ObserverBus
from chatpipes.protocol.recorder import ConversationRecorder, InMemoryRecorder
