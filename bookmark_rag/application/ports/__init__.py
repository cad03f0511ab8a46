"""Application ports package.

Re-exports the collaborator interfaces the use cases depend on.
"""

from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.application.ports.clock_port import ClockPort
from bookmark_rag.application.ports.embedding_index_port import EmbeddingIndexPort
from bookmark_rag.application.ports.embedding_port import EmbeddingPort
from bookmark_rag.application.ports.llm_port import ChatMessage, LLMPort
from bookmark_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort

__all__ = [
    "BookmarkRepositoryPort",
    "ChatMessage",
    "ClockPort",
    "EmbeddingIndexPort",
    "EmbeddingPort",
    "LLMPort",
    "NoopTelemetry",
    "TelemetryPort",
]
