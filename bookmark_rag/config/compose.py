"""Dependency injection container with environment-driven wiring."""

from __future__ import annotations

from typing import TYPE_CHECKING

from bookmark_rag.application.ports import (
    BookmarkRepositoryPort,
    ClockPort,
    EmbeddingIndexPort,
    EmbeddingPort,
    LLMPort,
    NoopTelemetry,
    TelemetryPort,
)
from bookmark_rag.config.settings import AppSettings
from bookmark_rag.domain.errors import ConfigurationError

if TYPE_CHECKING:
    from bookmark_rag.application.use_cases.analyze_query import QueryAnalyzer
    from bookmark_rag.application.use_cases.ask_bookmarks import AskBookmarks, ChatSession
    from bookmark_rag.application.use_cases.embedding_store import EmbeddingStore
    from bookmark_rag.application.use_cases.hybrid_retrieval import HybridRetriever
    from bookmark_rag.application.use_cases.import_bookmarks import ImportBookmarks
    from bookmark_rag.application.use_cases.stream_answer import AnswerStreamer


class Container:
    """Dependency injection container for application components.

    Responsibilities:
    1. Read settings from environment (via AppSettings)
    2. Choose adapters based on settings (llm_provider, embedding_backend, vector_backend, ...)
    3. Inject dependencies into use cases

    Adapters are built on first use and cached; use cases share them.
    """

    def __init__(self, settings: AppSettings | None = None) -> None:
        self.settings = settings or AppSettings()
        self._llm: LLMPort | None = None
        self._embedding: EmbeddingPort | None = None
        self._index: EmbeddingIndexPort | None = None
        self._repository: BookmarkRepositoryPort | None = None
        self._telemetry: TelemetryPort | None = None
        self._clock: ClockPort | None = None
        self._embedding_store: EmbeddingStore | None = None

    # ===== Adapters =====

    def get_llm(self) -> LLMPort:
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def get_embedding(self) -> EmbeddingPort:
        if self._embedding is None:
            self._embedding = self._build_embedding()
        return self._embedding

    def get_embedding_index(self) -> EmbeddingIndexPort:
        if self._index is None:
            self._index = self._build_embedding_index()
        return self._index

    def get_repository(self) -> BookmarkRepositoryPort:
        if self._repository is None:
            self._repository = self._build_repository()
        return self._repository

    def get_telemetry(self) -> TelemetryPort:
        if self._telemetry is None:
            self._telemetry = self._build_telemetry()
        return self._telemetry

    def get_clock(self) -> ClockPort:
        if self._clock is None:
            from bookmark_rag.infrastructure.time.system_clock import SystemClock

            self._clock = SystemClock()
        return self._clock

    # ===== Use Cases =====

    def get_embedding_store(self) -> EmbeddingStore:
        if self._embedding_store is None:
            from bookmark_rag.application.use_cases.embedding_store import EmbeddingStore

            s = self.settings
            self._embedding_store = EmbeddingStore(
                embedder=self.get_embedding(),
                index=self.get_embedding_index(),
                batch_size=s.embedding_batch_size,
                max_attempts=s.embedding_max_attempts,
                timeout_s=s.embedding_timeout_s,
                telemetry=self.get_telemetry(),
            )
        return self._embedding_store

    def get_query_analyzer(self) -> QueryAnalyzer:
        from bookmark_rag.application.use_cases.analyze_query import QueryAnalyzer

        return QueryAnalyzer(
            llm=self.get_llm(),
            clock=self.get_clock(),
            model=self.settings.llm_analysis_model or None,
            timeout_s=self.settings.analysis_timeout_s,
            telemetry=self.get_telemetry(),
        )

    def get_retriever(self) -> HybridRetriever:
        from bookmark_rag.application.use_cases.hybrid_retrieval import HybridRetriever

        s = self.settings
        return HybridRetriever(
            repository=self.get_repository(),
            embeddings=self.get_embedding_store(),
            top_k=s.retrieval_top_k,
            semantic_top_m=s.retrieval_semantic_top_m,
            min_similarity=s.retrieval_min_similarity,
            lazy_embed=s.retrieval_lazy_embed,
            lexical_weight=s.lexical_weight,
            semantic_weight=s.semantic_weight,
            telemetry=self.get_telemetry(),
        )

    def get_answer_streamer(self) -> AnswerStreamer:
        from bookmark_rag.application.use_cases.stream_answer import AnswerStreamer

        s = self.settings
        return AnswerStreamer(
            llm=self.get_llm(),
            repository=self.get_repository(),
            model=s.llm_answer_model or None,
            max_tokens=s.llm_answer_max_tokens,
            flush_interval_s=s.stream_flush_interval_ms / 1000.0,
            idle_timeout_s=s.stream_idle_timeout_s,
            max_retries=s.stream_max_retries,
            backoff_base_s=s.stream_backoff_base_s,
            queue_size=s.stream_queue_size,
            history_max_turns=s.history_max_turns,
            history_max_chars=s.history_max_chars,
            follow_up_limit=s.followup_limit or None,
            clock=self.get_clock(),
            telemetry=self.get_telemetry(),
        )

    def get_ask_use_case(self) -> AskBookmarks:
        from bookmark_rag.application.use_cases.ask_bookmarks import AskBookmarks

        return AskBookmarks(
            analyzer=self.get_query_analyzer(),
            retriever=self.get_retriever(),
            streamer=self.get_answer_streamer(),
        )

    def get_import_use_case(self) -> ImportBookmarks:
        from bookmark_rag.application.use_cases.import_bookmarks import ImportBookmarks

        return ImportBookmarks(
            repository=self.get_repository(), embeddings=self.get_embedding_store()
        )

    def new_chat_session(self) -> ChatSession:
        """A fresh session; call ``await session.resume()`` to load stored history."""
        from bookmark_rag.application.use_cases.ask_bookmarks import ChatSession

        return ChatSession(ask=self.get_ask_use_case(), repository=self.get_repository())

    # ===== Private Builder Methods =====

    def _build_llm(self) -> LLMPort:
        """Build the chat adapter for settings.llm_provider (anthropic | openai)."""
        s = self.settings
        if s.llm_provider == "anthropic":
            from bookmark_rag.infrastructure.llm.anthropic_adapter import AnthropicChatAdapter

            return AnthropicChatAdapter(
                api_key=s.anthropic_api_key,
                model=s.llm_answer_model,
                timeout_s=s.llm_timeout_s,
            )
        if s.llm_provider == "openai":
            from bookmark_rag.infrastructure.llm.openai_adapter import OpenAIChatAdapter

            return OpenAIChatAdapter(
                base_url=s.llm_base_url or None,
                api_key=s.llm_api_key,
                model=s.llm_answer_model,
                timeout_s=s.llm_timeout_s,
            )
        raise ConfigurationError(f"unknown LLM_PROVIDER: {s.llm_provider!r}")

    def _build_embedding(self) -> EmbeddingPort:
        """Build embedding adapter for settings.embedding_backend (openai | sentence-transformers)."""
        s = self.settings
        if s.embedding_backend == "openai":
            from bookmark_rag.infrastructure.embeddings.openai_embeddings import (
                OpenAIEmbeddingAdapter,
            )

            return OpenAIEmbeddingAdapter(
                base_url=s.llm_base_url or None,
                api_key=s.llm_api_key,
                model_name=s.embedding_model,
                timeout_s=s.embedding_timeout_s,
            )
        if s.embedding_backend in ("sentence-transformers", "sentence_transformers", "local"):
            from bookmark_rag.infrastructure.embeddings.sentence_transformers_adapter import (
                SentenceTransformersEmbeddingAdapter,
            )

            return SentenceTransformersEmbeddingAdapter(
                model_name=s.embedding_model, device=s.embedding_device
            )
        raise ConfigurationError(f"unknown EMBEDDING_BACKEND: {s.embedding_backend!r}")

    def _build_embedding_index(self) -> EmbeddingIndexPort:
        """Build embedding index for settings.vector_backend (memory | chroma)."""
        s = self.settings
        if s.vector_backend == "memory":
            from bookmark_rag.infrastructure.vectorstore.memory_index import (
                InMemoryEmbeddingIndex,
            )

            return InMemoryEmbeddingIndex(path=s.embedding_index_path or None)
        if s.vector_backend == "chroma":
            from bookmark_rag.infrastructure.vectorstore.chroma_index import ChromaEmbeddingIndex

            return ChromaEmbeddingIndex(persist_dir=s.chroma_dir, collection=s.collection)
        raise ConfigurationError(f"unknown VECTOR_BACKEND: {s.vector_backend!r}")

    def _build_repository(self) -> BookmarkRepositoryPort:
        """Build storage for settings.storage_backend (sqlite | memory)."""
        s = self.settings
        if s.storage_backend == "sqlite":
            from bookmark_rag.infrastructure.storage.sqlite_repository import (
                SQLiteBookmarkRepository,
            )

            return SQLiteBookmarkRepository(path=s.storage_path)
        if s.storage_backend == "memory":
            from bookmark_rag.infrastructure.storage.memory_repository import (
                InMemoryBookmarkRepository,
            )

            return InMemoryBookmarkRepository()
        raise ConfigurationError(f"unknown STORAGE_BACKEND: {s.storage_backend!r}")

    def _build_telemetry(self) -> TelemetryPort:
        """OpenTelemetryAdapter when settings.telemetry_enabled, otherwise a no-op."""
        if not self.settings.telemetry_enabled:
            return NoopTelemetry()

        from bookmark_rag.infrastructure.telemetry.otel_adapter import (
            OpenTelemetryAdapter,
            OtelConfig,
        )

        cfg = OtelConfig(
            service_name="bookmark-rag",
            otlp_endpoint=self.settings.otlp_endpoint or None,
            environment=self.settings.telemetry_environment,
        )
        return OpenTelemetryAdapter(cfg)


# ===== Convenience Functions =====


def build_container(settings: AppSettings | None = None) -> Container:
    """Build dependency injection container with settings.

    Example:
        container = build_container()
        session = container.new_chat_session()
        stream = await session.ask("what did @bob say about rust?")
    """
    return Container(settings)
