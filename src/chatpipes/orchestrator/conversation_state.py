"""
Conversation State Management for ChatPipes.

This module defines the lifecycle transitions a conversation may make and the
helpers used by the turn engine to validate them.
"""

from typing import Dict, List, Set

from chatpipes.errors import TransitionError
from chatpipes.protocol.models import ConversationStatus

# Define valid state transitions
VALID_STATE_TRANSITIONS: Dict[ConversationStatus, Set[ConversationStatus]] = {
    ConversationStatus.IDLE: {ConversationStatus.RUNNING, ConversationStatus.STOPPED, ConversationStatus.ERRORED},
    ConversationStatus.RUNNING: {ConversationStatus.PAUSED, ConversationStatus.STOPPED, ConversationStatus.ERRORED},
    ConversationStatus.PAUSED: {ConversationStatus.RUNNING, ConversationStatus.STOPPED, ConversationStatus.ERRORED},
    ConversationStatus.STOPPED: set(),  # Terminal
    ConversationStatus.ERRORED: set(),  # Terminal
}

TERMINAL_STATES = {ConversationStatus.STOPPED, ConversationStatus.ERRORED}


def validate_state_transition(current_state: ConversationStatus, new_state: ConversationStatus) -> bool:
    """
    Validate whether a state transition is allowed.

    Args:
        current_state: The current conversation status
        new_state: The proposed new status

    Returns:
        True if the transition is valid, False otherwise
    """
    if current_state == new_state:
        return True  # Same state is always valid

    valid_transitions = VALID_STATE_TRANSITIONS.get(current_state, set())
    return new_state in valid_transitions


def ensure_state_transition(current_state: ConversationStatus, new_state: ConversationStatus) -> None:
    """Raise TransitionError if the transition is not allowed."""
    if not validate_state_transition(current_state, new_state):
        raise TransitionError(f"Invalid state transition from {current_state.value} to {new_state.value}")


def get_valid_next_states(current_state: ConversationStatus) -> List[ConversationStatus]:
    """
    Get all valid states that can follow the current state.

    Args:
        current_state: The current conversation status

    Returns:
        List of valid next states
    """
    return list(VALID_STATE_TRANSITIONS.get(current_state, set()))


def is_terminal(state: ConversationStatus) -> bool:
    return state in TERMINAL_STATES
