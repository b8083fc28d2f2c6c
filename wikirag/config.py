"""Application configuration and environment-driven settings.

Defines:
- Settings: pydantic-settings class holding process-wide defaults for
  generation and embedding providers, the search store, chunking, prompting,
  retry policy, attachments and optional observability (Langfuse).
- RequestConfig: immutable per-request configuration built from Settings plus
  optional per-request overrides. It is threaded explicitly through the
  pipelines; shared settings are never mutated.
- parse_temperature / clamp_max_tokens: validation of generation parameters.
"""
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from wikirag.errors import ValidationError

MAX_TOKENS_CEILING = 8192

# (provider, endpoint) fields whose change invalidates the inherited API key
CREDENTIAL_TARGETS = (
    (("provider", "api_endpoint"), "api_key"),
    (("embedding_provider", "embedding_api_endpoint"), "embedding_api_key"),
)


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    """
    # Generation provider
    LLM_PROVIDER: str = "ollama"
    LLM_MODEL: str = "gemma:2b"
    LLM_API_KEY: str = Field(default="", description="API key for the generation provider")
    LLM_API_ENDPOINT: str = "http://ollama:11434/api/"
    LLM_MAX_TOKENS: int = 1000
    LLM_TEMPERATURE: float = 0.7
    LLM_TIMEOUT: float = 30

    # Embedding provider
    EMBEDDING_PROVIDER: str = "ollama"
    EMBEDDING_MODEL: str = "nomic-embed-text"
    EMBEDDING_API_KEY: str = ""
    EMBEDDING_API_ENDPOINT: str = "http://ollama:11434/api/"
    EMBEDDING_TIMEOUT: float = 30
    EMBEDDINGS_ENABLED: bool = True
    EMBEDDING_WORKERS: int = 1

    # Search store
    ELASTICSEARCH_URL: str = "http://localhost:9200"
    SEARCH_TIMEOUT: float = 10
    INDEX_PREFIX: str = "content_"
    SEARCH_MODE: str = "lexical"  # lexical | vector | hybrid
    SEARCH_FALLBACK_TO_LEXICAL: bool = False
    TOP_K: int = 5
    CONTEXT_HITS: int = 3
    LEXICAL_MIN_SCORE: float = 1.0
    VECTOR_MIN_SIMILARITY: float = 0.5  # cosine, -1..1
    HYBRID_ALPHA: float = 0.6  # vector weight in hybrid blend

    # Chunking / prompting
    MAX_CHUNK_SIZE: int = 5000
    CONTEXT_MAX_CHARS: int = 8000
    MAX_MESSAGE_LENGTH: int = 1000
    ALLOW_GENERAL_KNOWLEDGE: bool = False
    CUSTOM_PROMPT: str = ""
    CUSTOM_PROMPT_PAGE: str = ""
    PROMPT_DIR: str = "prompts"

    # Retry policy for transient provider errors
    GENERATION_MAX_ATTEMPTS: int = 3
    GENERATION_BACKOFF_BASE_SECONDS: float = 1.0

    # Attachments
    ATTACHMENT_CACHE_DIR: str = ""
    ATTACHMENT_TIMEOUT: float = 10

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()


class RequestConfig(BaseModel):
    """Per-request view of the configuration.

    Frozen: every pipeline stage receives the same instance and none may
    modify it. Temperature is kept as supplied (float or string) and is
    parsed by the generation dispatcher before any network call.
    """
    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    api_key: str = ""
    api_endpoint: str = ""
    temperature: Union[float, str] = 0.7
    max_tokens: int = 1000
    timeout: float = 30

    embedding_provider: str
    embedding_model: str
    embedding_api_key: str = ""
    embedding_api_endpoint: str = ""
    embedding_timeout: float = 30
    embeddings_enabled: bool = True
    embedding_workers: int = 1

    index_prefix: str = "content_"
    search_mode: str = "lexical"
    search_fallback_to_lexical: bool = False
    top_k: int = 5
    context_hits: int = 3
    lexical_min_score: float = 1.0
    vector_min_similarity: float = 0.5
    hybrid_alpha: float = 0.6

    max_chunk_size: int = 5000
    context_max_chars: int = 8000
    max_message_length: int = 1000
    allow_general_knowledge: bool = False
    custom_prompt: str = ""
    custom_prompt_page: str = ""
    prompt_dir: str = "prompts"

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0

    attachment_cache_dir: str = ""
    attachment_timeout: float = 10

    @classmethod
    def from_settings(cls, s: Settings) -> "RequestConfig":
        """Build a request configuration from process settings.

        Args:
            s: Loaded Settings instance.

        Returns:
            RequestConfig: Immutable configuration mirroring the settings.
        """
        return cls(
            provider=s.LLM_PROVIDER.lower(),
            model=s.LLM_MODEL,
            api_key=s.LLM_API_KEY,
            api_endpoint=s.LLM_API_ENDPOINT,
            temperature=s.LLM_TEMPERATURE,
            max_tokens=s.LLM_MAX_TOKENS,
            timeout=s.LLM_TIMEOUT,
            embedding_provider=s.EMBEDDING_PROVIDER.lower(),
            embedding_model=s.EMBEDDING_MODEL,
            embedding_api_key=s.EMBEDDING_API_KEY,
            embedding_api_endpoint=s.EMBEDDING_API_ENDPOINT,
            embedding_timeout=s.EMBEDDING_TIMEOUT,
            embeddings_enabled=s.EMBEDDINGS_ENABLED,
            embedding_workers=s.EMBEDDING_WORKERS,
            index_prefix=s.INDEX_PREFIX,
            search_mode=s.SEARCH_MODE.lower(),
            search_fallback_to_lexical=s.SEARCH_FALLBACK_TO_LEXICAL,
            top_k=s.TOP_K,
            context_hits=s.CONTEXT_HITS,
            lexical_min_score=s.LEXICAL_MIN_SCORE,
            vector_min_similarity=s.VECTOR_MIN_SIMILARITY,
            hybrid_alpha=s.HYBRID_ALPHA,
            max_chunk_size=s.MAX_CHUNK_SIZE,
            context_max_chars=s.CONTEXT_MAX_CHARS,
            max_message_length=s.MAX_MESSAGE_LENGTH,
            allow_general_knowledge=s.ALLOW_GENERAL_KNOWLEDGE,
            custom_prompt=s.CUSTOM_PROMPT,
            custom_prompt_page=s.CUSTOM_PROMPT_PAGE,
            prompt_dir=s.PROMPT_DIR,
            max_attempts=s.GENERATION_MAX_ATTEMPTS,
            backoff_base_seconds=s.GENERATION_BACKOFF_BASE_SECONDS,
            attachment_cache_dir=s.ATTACHMENT_CACHE_DIR,
            attachment_timeout=s.ATTACHMENT_TIMEOUT,
        )

    def with_overrides(self, **overrides: Any) -> "RequestConfig":
        """Return a copy with the non-None overrides applied.

        Unknown keys raise ValidationError so that typos in per-request
        overrides surface instead of being silently ignored.

        Changing the provider or endpoint without also supplying a key clears
        the inherited key, so providers that need one fail validation.
        """
        updates = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(updates) - set(type(self).model_fields)
        if unknown:
            raise ValidationError(f"Unknown configuration override(s): {', '.join(sorted(unknown))}")
        if "provider" in updates:
            updates["provider"] = str(updates["provider"]).lower()
        if "embedding_provider" in updates:
            updates["embedding_provider"] = str(updates["embedding_provider"]).lower()
        for targets, key_field in CREDENTIAL_TARGETS:
            redirected = any(f in updates and updates[f] != getattr(self, f) for f in targets)
            if redirected and key_field not in updates:
                # stored key is never sent to a caller-chosen provider or endpoint
                updates[key_field] = ""
        return self.model_copy(update=updates)


def default_request_config() -> RequestConfig:
    """Request configuration derived from the module-level settings."""
    return RequestConfig.from_settings(settings)


def parse_temperature(value: Optional[Union[float, str]]) -> float:
    """Parse a temperature into a float within [0.0, 1.0].

    Args:
        value: Raw temperature as float or string.

    Returns:
        float: The parsed temperature, unchanged when already in range.

    Raises:
        ValidationError: If the value is missing, not numeric or out of range.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Temperature is required", code="invalid-temperature")
    if isinstance(value, bool):
        raise ValidationError(f"Temperature must be a number, got {value!r}", code="invalid-temperature")
    try:
        temp = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Temperature must be a number, got {value!r}", code="invalid-temperature")
    if temp != temp or not 0.0 <= temp <= 1.0:
        raise ValidationError(f"Temperature must be between 0 and 1, got {value!r}", code="invalid-temperature")
    return temp


def clamp_max_tokens(value: Optional[Union[int, str]], default: int = 1000) -> int:
    """Clamp a max-token budget into [1, MAX_TOKENS_CEILING].

    Non-numeric values fall back to ``default``.
    """
    try:
        tokens = int(value) if value is not None else default
    except (TypeError, ValueError):
        tokens = default
    return max(1, min(MAX_TOKENS_CEILING, tokens))
