"""
Base agent interface for ChatPipes.

Concrete agents (API clients, browser automation, ...) live outside this
package. The turn engine never branches on which backend it is talking to:
everything goes through ``send``, ``close`` and ``get_stats``.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class DispatchContext(BaseModel):
    """Context passed alongside each prompt."""

    conversation_id: UUID = Field(..., description="Conversation the turn belongs to")
    round: int = Field(..., description="Round being played")
    speaker_id: str = Field(..., description="Participant the prompt is sent to")
    addressee_id: str = Field(..., description="Participant the response is directed at, or 'broadcast'")
    attempt: int = Field(default=1, description="1 for the first try, higher on retries")
    temperature: float = Field(default=0.7, description="Persona sampling temperature")
    max_tokens: Optional[int] = Field(None, description="Persona response length hint")


class AgentStats(BaseModel):
    """Counters reported by an agent."""

    is_initialized: bool = False
    requests: int = 0
    failures: int = 0
    last_error: Optional[str] = None
    last_request_at: Optional[datetime] = None
    average_latency_ms: Optional[float] = None


class AgentInterface(ABC):
    """Base interface for agents backing conversation participants."""

    @abstractmethod
    async def send(self, prompt: str, context: DispatchContext) -> str:
        """
        Send a prompt to the agent and wait for its response.

        Args:
            prompt: The fully composed prompt
            context: Dispatch context for the turn

        Returns:
            The agent's response text

        Raises:
            CommunicationError: On transport failure or timeout
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release any resources held by the agent."""
        pass

    @abstractmethod
    def get_stats(self) -> AgentStats:
        """Get usage counters for the agent."""
        pass
