"""
Error taxonomy for ChatPipes.

Configuration and state errors are raised synchronously to the caller.
Communication errors come from agent dispatch and are retried by the turn
engine before they become fatal to a conversation.
"""


class ChatPipesError(Exception):
    """Base class for all ChatPipes errors."""
    pass


class ConfigurationError(ChatPipesError):
    """Invalid conversation setup (no participants, unknown starting speaker, ...)."""
    pass


class CommunicationError(ChatPipesError):
    """Dispatch to an agent failed because of transport failure or timeout."""

    def __init__(self, message: str, participant_id: str = None, attempts: int = 0):
        super().__init__(message)
        self.participant_id = participant_id
        self.attempts = attempts


class InvalidStateError(ChatPipesError):
    """A lifecycle operation was requested in a state that does not allow it."""
    pass


class AlreadyRunningError(InvalidStateError):
    """start() was called on a conversation that is not idle."""
    pass


class SessionClosedError(ChatPipesError):
    """A mutation was attempted after the conversation was stopped."""
    pass


class InterventionTargetError(ChatPipesError):
    """An intervention names a participant that is not in the conversation."""
    pass


class TransitionError(ChatPipesError):
    """Exception raised for invalid state transitions."""
    pass
