"""Engine settings, loaded from env / .env (prefix INTENT_ENGINE_)."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="INTENT_ENGINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- general ---
    service_name: str = "intent-engine"
    log_level: str = "INFO"

    # --- rate limiting (fixed window per tenant+user+scope) ---
    rate_limit_requests: int = 100
    rate_limit_window_seconds: int = 3600
    act_rate_limit_requests: int = 100

    # --- disambiguation ---
    auto_select_min_confidence: float = 0.80
    auto_select_min_margin: float = 0.15
    fallback_confidence_penalty: float = 0.05
    heuristic_confidence_ceiling: float = 0.5

    # --- candidate resolution ---
    top_k: int = 5
    min_similarity: float = 0.3
    mention_boost: float = 0.20
    assignment_boost: float = 0.12
    linkage_boost: float = 0.06
    recency_boost: float = 0.03
    recency_window_days: int = 7

    # --- stage timeouts (seconds) ---
    llm_timeout_seconds: float = 3.0
    embedding_timeout_seconds: float = 2.0
    vector_timeout_seconds: float = 2.0
    executor_timeout_seconds: float = 5.0

    # --- circuit breaker (per provider) ---
    breaker_failure_threshold: int = 3
    breaker_reset_seconds: float = 30.0

    # --- executor ---
    executor_max_attempts: int = 3
    executor_backoff_seconds: float = 0.2

    # --- confirmation ---
    confirmation_secret: str = "dev-only-confirmation-secret"
    confirmation_ttl_seconds: int = 900
    confirm_medium_risk: bool = False
    auto_execute_safe_actions: bool = True

    # --- identity ---
    identity_mode: Literal["gateway", "static"] = "gateway"

    # --- language model (OpenAI-compatible) ---
    llm_base_url: Optional[str] = None
    llm_api_key: str = ""
    llm_model: str = "gpt-4o-mini"

    # --- embeddings ---
    embedding_base_url: Optional[str] = None
    embedding_api_key: str = ""
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 256

    # --- vector index (Qdrant) ---
    qdrant_url: Optional[str] = None
    qdrant_api_key: str = ""
    qdrant_collection: str = "work_items"

    # --- work item service ---
    work_item_service_url: Optional[str] = None

    # --- history ---
    history_db_path: str = ":memory:"
    store_utterance_text: bool = True

    # --- events ---
    event_queue_size: int = 100


@lru_cache
def get_settings() -> EngineSettings:
    return EngineSettings()
