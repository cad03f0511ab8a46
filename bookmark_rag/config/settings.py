"""Application settings with environment-driven configuration.

This is the ONLY place where environment variables are read.
"""

import os
from dataclasses import dataclass, field


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class AppSettings:
    """Application settings loaded from environment variables.

    All other layers receive settings via dependency injection.
    """

    # ===== LLM Configuration =====
    llm_provider: str = field(default_factory=lambda: os.getenv("LLM_PROVIDER", "anthropic").lower())
    # Supported: "anthropic" | "openai" (any OpenAI-compatible endpoint)

    llm_base_url: str = field(default_factory=lambda: os.getenv("LLM_BASE_URL", ""))
    llm_api_key: str = field(default_factory=lambda: os.getenv("LLM_API_KEY", "EMPTY"))
    anthropic_api_key: str = field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY", ""))
    llm_answer_model: str = field(
        default_factory=lambda: os.getenv("LLM_ANSWER_MODEL", "claude-sonnet-4-20250514")
    )
    llm_analysis_model: str = field(
        default_factory=lambda: os.getenv("LLM_ANALYSIS_MODEL", "claude-3-haiku-20240307")
    )
    llm_answer_max_tokens: int = field(
        default_factory=lambda: int(os.getenv("LLM_ANSWER_MAX_TOKENS", "1500"))
    )
    llm_timeout_s: float = field(default_factory=lambda: float(os.getenv("LLM_TIMEOUT_S", "60")))

    # ===== Embedding Configuration =====
    embedding_backend: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_BACKEND", "openai").lower()
    )
    # Supported: "openai" | "sentence-transformers"

    embedding_model: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    embedding_device: str = field(default_factory=lambda: os.getenv("EMBEDDING_DEVICE", "cpu"))
    # Supported: "cpu" | "cuda" | "mps"

    embedding_batch_size: int = field(
        default_factory=lambda: int(os.getenv("EMBEDDING_BATCH_SIZE", "20"))
    )
    embedding_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("EMBEDDING_MAX_ATTEMPTS", "3"))
    )
    embedding_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("EMBEDDING_TIMEOUT_S", "30"))
    )

    # ===== Embedding Index Configuration =====
    vector_backend: str = field(default_factory=lambda: os.getenv("VECTOR_BACKEND", "memory").lower())
    # Supported: "memory" (JSON file) | "chroma"

    embedding_index_path: str = field(
        default_factory=lambda: os.getenv("EMBEDDING_INDEX_PATH", "var/embeddings.json")
    )
    chroma_dir: str = field(default_factory=lambda: os.getenv("CHROMA_DIR", "var/chroma"))
    collection: str = field(
        default_factory=lambda: os.getenv("VECTOR_COLLECTION", "bookmark_embeddings")
    )

    # ===== Storage Configuration =====
    storage_backend: str = field(
        default_factory=lambda: os.getenv("STORAGE_BACKEND", "sqlite").lower()
    )
    # Supported: "sqlite" | "memory"

    storage_path: str = field(default_factory=lambda: os.getenv("STORAGE_PATH", "var/bookmarks.db"))

    # ===== Retrieval Configuration =====
    retrieval_top_k: int = field(default_factory=lambda: int(os.getenv("RETRIEVAL_TOP_K", "20")))
    retrieval_semantic_top_m: int = field(
        default_factory=lambda: int(os.getenv("RETRIEVAL_SEMANTIC_TOP_M", "40"))
    )
    retrieval_min_similarity: float = field(
        default_factory=lambda: float(os.getenv("RETRIEVAL_MIN_SIMILARITY", "0.25"))
    )
    retrieval_lazy_embed: bool = field(default_factory=lambda: _flag("RETRIEVAL_LAZY_EMBED", "true"))
    lexical_weight: float = field(default_factory=lambda: float(os.getenv("LEXICAL_WEIGHT", "0.6")))
    semantic_weight: float = field(
        default_factory=lambda: float(os.getenv("SEMANTIC_WEIGHT", "0.4"))
    )

    # ===== Analysis / Streaming Configuration =====
    analysis_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("ANALYSIS_TIMEOUT_S", "15"))
    )
    stream_flush_interval_ms: int = field(
        default_factory=lambda: int(os.getenv("STREAM_FLUSH_INTERVAL_MS", "50"))
    )
    stream_idle_timeout_s: float = field(
        default_factory=lambda: float(os.getenv("STREAM_IDLE_TIMEOUT_S", "30"))
    )
    stream_max_retries: int = field(default_factory=lambda: int(os.getenv("STREAM_MAX_RETRIES", "2")))
    stream_backoff_base_s: float = field(
        default_factory=lambda: float(os.getenv("STREAM_BACKOFF_BASE_S", "0.5"))
    )
    stream_queue_size: int = field(default_factory=lambda: int(os.getenv("STREAM_QUEUE_SIZE", "256")))
    history_max_turns: int = field(default_factory=lambda: int(os.getenv("HISTORY_MAX_TURNS", "10")))
    history_max_chars: int = field(
        default_factory=lambda: int(os.getenv("HISTORY_MAX_CHARS", "12000"))
    )
    followup_limit: int = field(default_factory=lambda: int(os.getenv("FOLLOWUP_LIMIT", "3")))
    # 0 = keep every suggestion

    # ===== Telemetry Configuration =====
    telemetry_enabled: bool = field(default_factory=lambda: _flag("TELEMETRY_ENABLED", "false"))
    otlp_endpoint: str = field(default_factory=lambda: os.getenv("OTLP_ENDPOINT", ""))
    # Empty string = no OTLP export

    telemetry_environment: str = field(
        default_factory=lambda: os.getenv("TELEMETRY_ENVIRONMENT", "production")
    )

    # ===== Logging =====
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
