"""
Agent interface for ChatPipes.

This module defines the contract the turn engine uses to talk to the agent
behind each participant, plus offline implementations for local runs.
"""

from chatpipes.agents.base import AgentInterface, AgentStats, DispatchContext
from chatpipes.agents.scripted import CallableAgent, ScriptedAgent

__all__ = ["AgentInterface", "AgentStats", "DispatchContext", "CallableAgent", "ScriptedAgent"]
