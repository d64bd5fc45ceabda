"""
ChatPipes

Turn-based orchestration of conversations between autonomous agent participants,
with live operator interventions and a bounded, decaying conversational memory.
"""

__version__ = "0.1.0"
