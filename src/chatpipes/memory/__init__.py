"""
Memory subsystem for ChatPipes.

Raw utterances go into a MemoryStore; the MemoryCompressor turns them into
compact, typed memory and renders bounded summaries for prompt construction.
"""

from chatpipes.memory.base import MemoryStore
from chatpipes.memory.classifier import UtteranceClassifier, UtteranceLabel
from chatpipes.memory.compressor import CompressionConfig, MemoryCompressor
from chatpipes.memory.inmemory import InMemoryStore

__all__ = [
    "MemoryStore",
    "InMemoryStore",
    "UtteranceClassifier",
    "UtteranceLabel",
    "CompressionConfig",
    "MemoryCompressor",
]
