"""
Offline agent implementations.

``ScriptedAgent`` replays canned responses and can be told to fail on chosen
calls; ``CallableAgent`` wraps any async function. Both are useful for local
runs of the orchestrator without a remote model.
"""

import asyncio
import time
from abc import abstractmethod
from typing import Awaitable, Callable, Iterable, List, Optional, Set

from chatpipes.agents.base import AgentInterface, AgentStats, DispatchContext
from chatpipes.errors import CommunicationError
from chatpipes.protocol.models import utcnow


class _TrackingAgent(AgentInterface):
    """Shared bookkeeping for the offline agents."""

    def __init__(self):
        self._stats = AgentStats(is_initialized=True)
        self._total_latency_ms = 0.0
        self.closed = False
        self.prompts: List[str] = []
        self.contexts: List[DispatchContext] = []

    async def send(self, prompt: str, context: DispatchContext) -> str:
        if self.closed:
            raise CommunicationError("Agent is closed", participant_id=context.speaker_id)

        self.prompts.append(prompt)
        self.contexts.append(context)
        self._stats.requests += 1
        self._stats.last_request_at = utcnow()

        start_time = time.monotonic()
        try:
            response = await self._respond(prompt, context)
        except CommunicationError as e:
            self._stats.failures += 1
            self._stats.last_error = str(e)
            raise
        finally:
            self._total_latency_ms += (time.monotonic() - start_time) * 1000
            self._stats.average_latency_ms = self._total_latency_ms / self._stats.requests
        return response

    @abstractmethod
    async def _respond(self, prompt: str, context: DispatchContext) -> str:
        """Produce the reply for one call."""
        pass

    async def close(self) -> None:
        self.closed = True

    def get_stats(self) -> AgentStats:
        return self._stats.model_copy()


class ScriptedAgent(_TrackingAgent):
    """
    Agent that replays a fixed list of responses.

    Responses are used in order and the list cycles when exhausted. Calls
    whose 1-based number is in ``fail_on`` raise ``CommunicationError``.
    """

    def __init__(
        self,
        responses: Iterable[str],
        latency: float = 0.0,
        fail_on: Optional[Iterable[int]] = None
    ):
        super().__init__()
        self.responses = list(responses)
        if not self.responses:
            raise ValueError("ScriptedAgent requires at least one response")
        self.latency = latency
        self.fail_on: Set[int] = set(fail_on or [])
        self._calls = 0
        self._next = 0

    async def _respond(self, prompt: str, context: DispatchContext) -> str:
        self._calls += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._calls in self.fail_on:
            raise CommunicationError(
                f"Scripted failure on call {self._calls}",
                participant_id=context.speaker_id,
                attempts=context.attempt
            )
        response = self.responses[self._next % len(self.responses)]
        self._next += 1
        return response


class CallableAgent(_TrackingAgent):
    """Agent that delegates to an async function ``fn(prompt, context) -> str``."""

    def __init__(self, fn: Callable[[str, DispatchContext], Awaitable[str]]):
        super().__init__()
        self.fn = fn

    async def _respond(self, prompt: str, context: DispatchContext) -> str:
        return await self.fn(prompt, context)
