# bookmark_rag/application/use_cases/hybrid_retrieval.py
from __future__ import annotations

import logging

from bookmark_rag.application.ports.bookmark_repository_port import BookmarkRepositoryPort
from bookmark_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from bookmark_rag.application.use_cases.embedding_store import EmbeddingStore
from bookmark_rag.domain.errors import EmbeddingBatchFailure, EmbeddingError, RepositoryError
from bookmark_rag.domain.models import QueryIntent, RetrievalCandidate, is_retrieval_empty
from bookmark_rag.domain.services.ranking import (
    LEXICAL_WEIGHT,
    SEMANTIC_WEIGHT,
    LexicalHit,
    SemanticHit,
    lexical_pass,
    merge_passes,
)

logger = logging.getLogger(__name__)


class HybridRetriever:
    """
    Lexical + semantic retrieval over the current corpus.

    Author and date filters restrict both passes. An empty result is a valid
    outcome; embedding trouble only empties the semantic pass.
    """

    def __init__(
        self,
        repository: BookmarkRepositoryPort,
        embeddings: EmbeddingStore,
        top_k: int = 20,
        semantic_top_m: int = 40,
        min_similarity: float = 0.25,
        lazy_embed: bool = True,
        lexical_weight: float = LEXICAL_WEIGHT,
        semantic_weight: float = SEMANTIC_WEIGHT,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.repository = repository
        self.embeddings = embeddings
        self.top_k = top_k
        self.semantic_top_m = max(semantic_top_m, top_k)
        self.min_similarity = min_similarity
        self.lazy_embed = lazy_embed
        self.lexical_weight = lexical_weight
        self.semantic_weight = semantic_weight
        self.telemetry = telemetry or NoopTelemetry()

    async def retrieve(self, intent: QueryIntent) -> list[RetrievalCandidate]:
        lexical = self._lexical(intent)
        semantic = await self._semantic(intent) if intent.wants_semantic_pass() else []
        merged = merge_passes(
            lexical,
            semantic,
            self.top_k,
            lexical_weight=self.lexical_weight,
            semantic_weight=self.semantic_weight,
        )
        logger.debug(
            "retrieved %d candidate(s): lexical=%d semantic=%d degraded=%s",
            len(merged),
            len(lexical),
            len(semantic),
            intent.degraded,
        )
        if is_retrieval_empty(merged):
            logger.info("no bookmarks matched; answering from empty context")
        self.telemetry.observe(
            "rag.retrieval.candidates", float(len(merged)), {"degraded": str(intent.degraded).lower()}
        )
        return merged

    def _lexical(self, intent: QueryIntent) -> list[LexicalHit]:
        if intent.keywords:
            pool = self.repository.find_by_keyword(list(intent.keywords))
        elif intent.authors is not None:
            pool = self.repository.all_current()
        else:
            return []
        return lexical_pass(intent, pool)

    async def _semantic(self, intent: QueryIntent) -> list[SemanticHit]:
        text = intent.semantic_text.strip()
        if not text:
            return []
        corpus = [bm for bm in self.repository.all_current() if intent.admits(bm)]
        if not corpus:
            return []
        try:
            query = await self.embeddings.embed_query(text)
            if self.lazy_embed:
                await self.embeddings.ensure_embeddings(corpus)
            scored = self.embeddings.similarity(
                query, corpus, self.semantic_top_m, self.min_similarity
            )
        except (EmbeddingError, EmbeddingBatchFailure, RepositoryError) as ex:
            logger.warning("semantic pass skipped: %s", ex)
            return []
        by_id = {bm.id: bm for bm in corpus}
        return [SemanticHit(by_id[i], s) for i, s in scored if i in by_id]
