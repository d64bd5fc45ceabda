"""
Orchestration components for ChatPipes.

This package contains the turn engine, its speaker policy, intervention queue,
prompt composition and the registry used to run several conversations.
"""

from chatpipes.orchestrator.conversation_state import (
    VALID_STATE_TRANSITIONS,
    get_valid_next_states,
    validate_state_transition
)
from chatpipes.orchestrator.intervention_queue import InterventionQueue
from chatpipes.orchestrator.prompt_builder import ComposedPrompt, PromptBuilder
from chatpipes.orchestrator.registry import ConversationRegistry
from chatpipes.orchestrator.turn_engine import TurnEngine
from chatpipes.orchestrator.turn_policy import TurnManager, TurnPolicy

__all__ = [
    "VALID_STATE_TRANSITIONS",
    "get_valid_next_states",
    "validate_state_transition",
    "InterventionQueue",
    "ComposedPrompt",
    "PromptBuilder",
    "ConversationRegistry",
    "TurnEngine",
    "TurnManager",
    "TurnPolicy",
]
