"""
Observer events for ChatPipes.

Every event published by a conversation is one of the models below. The set
is closed: observers can dispatch on ``event.type`` without guessing at
payload shapes.
"""

from datetime import datetime
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from chatpipes.protocol.models import (
    ConversationStatus,
    Exchange,
    Intervention,
    utcnow
)


class ConversationEvent(BaseModel):
    """Fields shared by every event."""

    conversation_id: Optional[UUID] = Field(None, description="Conversation that emitted the event")
    timestamp: datetime = Field(default_factory=utcnow, description="When the event was emitted")


class TurnStartEvent(ConversationEvent):
    type: Literal["turn_start"] = "turn_start"
    round: int
    speaker_id: str


class TurnEndEvent(ConversationEvent):
    type: Literal["turn_end"] = "turn_end"
    round: int
    speaker_id: str
    exchange: Exchange


class InterventionAddedEvent(ConversationEvent):
    type: Literal["intervention_added"] = "intervention_added"
    intervention: Intervention


class InterventionAppliedEvent(ConversationEvent):
    type: Literal["intervention_applied"] = "intervention_applied"
    intervention_id: UUID
    original_prompt: str
    modified_prompt: str


class ErrorEvent(ConversationEvent):
    type: Literal["error"] = "error"
    kind: str = Field(..., description="Error class name, e.g. CommunicationError")
    message: str


class StatusChangedEvent(ConversationEvent):
    type: Literal["status_changed"] = "status_changed"
    from_status: ConversationStatus
    to_status: ConversationStatus


Event = Union[
    TurnStartEvent,
    TurnEndEvent,
    InterventionAddedEvent,
    InterventionAppliedEvent,
    ErrorEvent,
    StatusChangedEvent,
]
