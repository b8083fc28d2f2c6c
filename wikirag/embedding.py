"""Embedding providers and batch embedding.

Provides:
- EmbeddingProvider: base class; one subclass per vendor normalizes that
  vendor's response envelope into a plain list of floats.
- register_embedding_provider / get_embedding_provider: registry keyed by
  provider id (ollama, openai, gemini, azure).
- embedding_dimension: pure lookup of a provider's vector dimension.
- embed / embed_batch: never raise on provider failure; a failed text simply
  yields no embedding so callers can skip it.

Per-call model, credentials, endpoint and timeout come from RequestConfig.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple, Type

import requests
from openai import OpenAI, OpenAIError

from wikirag.config import RequestConfig
from wikirag.errors import ConfigurationError, EmbeddingFailure
from wikirag.schemas import EmbeddingVector

logger = logging.getLogger(__name__)

DEFAULT_DIMENSION = 1536
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
AZURE_EMBEDDING_API_VERSION = "2023-05-15"


class EmbeddingProvider:
    """Base embedding provider.

    Subclasses implement ``_embed`` and raise EmbeddingFailure on any error;
    ``embed`` converts that into ``None``.
    """
    name = "base"
    dimension = DEFAULT_DIMENSION
    requires_api_key = False
    requires_endpoint = False

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        """Injected session, or one requests.Session per thread for pooled batch embedding."""
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def validate(self, cfg: RequestConfig) -> None:
        if self.requires_api_key and not cfg.embedding_api_key:
            raise ConfigurationError(f"Embedding provider '{self.name}' requires an API key")
        if self.requires_endpoint and not cfg.embedding_api_endpoint:
            raise ConfigurationError(f"Embedding provider '{self.name}' requires an API endpoint")

    def embed(self, text: str, cfg: RequestConfig) -> Optional[List[float]]:
        """Embed one text; returns None when no embedding was produced."""
        try:
            vector = self._embed(text, cfg)
        except EmbeddingFailure as e:
            logger.warning("%s embedding failed: %s", self.name, e)
            return None
        return vector

    def _embed(self, text: str, cfg: RequestConfig) -> List[float]:
        raise NotImplementedError

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Any:
        """POST JSON and return the decoded body, raising EmbeddingFailure on any failure."""
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            raise EmbeddingFailure(f"request error: {e}")
        if resp.status_code != 200:
            raise EmbeddingFailure(f"HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError:
            raise EmbeddingFailure("response is not valid JSON")


def _as_vector(value: Any) -> List[float]:
    if not isinstance(value, list) or not value:
        raise EmbeddingFailure("missing embedding field")
    try:
        return [float(x) for x in value]
    except (TypeError, ValueError):
        raise EmbeddingFailure("embedding contains non-numeric values")


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Local model server: POST {endpoint}/embed -> {"embeddings": [[...]]}."""
    name = "ollama"
    dimension = 1024
    requires_endpoint = True

    def _embed(self, text: str, cfg: RequestConfig) -> List[float]:
        url = cfg.embedding_api_endpoint.rstrip("/") + "/embed"
        data = self._post_json(
            url,
            {"model": cfg.embedding_model, "input": text},
            {"Content-Type": "application/json"},
            cfg.embedding_timeout,
        )
        try:
            return _as_vector(data["embeddings"][0])
        except (KeyError, IndexError, TypeError):
            raise EmbeddingFailure("missing embeddings in response")


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings through the official SDK."""
    name = "openai"
    dimension = 1536
    requires_api_key = True

    def _client(self, cfg: RequestConfig) -> OpenAI:
        return OpenAI(
            api_key=cfg.embedding_api_key,
            base_url=cfg.embedding_api_endpoint or None,
            timeout=cfg.embedding_timeout,
            max_retries=0,
        )

    def _embed(self, text: str, cfg: RequestConfig) -> List[float]:
        try:
            resp = self._client(cfg).embeddings.create(model=cfg.embedding_model, input=[text])
        except OpenAIError as e:
            raise EmbeddingFailure(str(e))
        if not resp.data:
            raise EmbeddingFailure("missing embedding data")
        return _as_vector(list(resp.data[0].embedding))


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Gemini embedContent: {"embedding": {"values": [...]}}."""
    name = "gemini"
    dimension = 768
    requires_api_key = True

    def _embed(self, text: str, cfg: RequestConfig) -> List[float]:
        base = cfg.embedding_api_endpoint if "generativelanguage" in cfg.embedding_api_endpoint else GEMINI_API_BASE
        url = f"{base.rstrip('/')}/models/{cfg.embedding_model}:embedContent"
        data = self._post_json(
            url,
            {"content": {"parts": [{"text": text}]}},
            {"Content-Type": "application/json", "x-goog-api-key": cfg.embedding_api_key},
            cfg.embedding_timeout,
        )
        try:
            return _as_vector(data["embedding"]["values"])
        except (KeyError, TypeError):
            raise EmbeddingFailure("missing embedding.values in response")


class AzureEmbeddingProvider(EmbeddingProvider):
    """Azure OpenAI deployment: {endpoint}/embeddings?api-version=..."""
    name = "azure"
    dimension = 1536
    requires_api_key = True
    requires_endpoint = True

    def _embed(self, text: str, cfg: RequestConfig) -> List[float]:
        url = f"{cfg.embedding_api_endpoint.rstrip('/')}/embeddings?api-version={AZURE_EMBEDDING_API_VERSION}"
        data = self._post_json(
            url,
            {"input": text, "model": cfg.embedding_model},
            {"Content-Type": "application/json", "api-key": cfg.embedding_api_key},
            cfg.embedding_timeout,
        )
        try:
            return _as_vector(data["data"][0]["embedding"])
        except (KeyError, IndexError, TypeError):
            raise EmbeddingFailure("missing data[0].embedding in response")


_PROVIDERS: Dict[str, Type[EmbeddingProvider]] = {}
_instances: Dict[str, EmbeddingProvider] = {}


def register_embedding_provider(cls: Type[EmbeddingProvider]) -> Type[EmbeddingProvider]:
    """Register (or replace) an embedding provider class under ``cls.name``."""
    _PROVIDERS[cls.name] = cls
    _instances.pop(cls.name, None)
    return cls


for _cls in (OllamaEmbeddingProvider, OpenAIEmbeddingProvider, GeminiEmbeddingProvider, AzureEmbeddingProvider):
    register_embedding_provider(_cls)


def get_embedding_provider(name: str) -> EmbeddingProvider:
    """Return the cached provider instance for ``name``.

    Raises:
        ConfigurationError: If no provider is registered under that name.
    """
    key = (name or "").lower()
    if key not in _PROVIDERS:
        raise ConfigurationError(f"Unknown embedding provider: {name!r}")
    if key not in _instances:
        _instances[key] = _PROVIDERS[key]()
    return _instances[key]


def embedding_dimension(provider: str) -> int:
    """Vector dimension produced by ``provider``; no network call.

    Unknown providers fall back to 1536.
    """
    cls = _PROVIDERS.get((provider or "").lower())
    return cls.dimension if cls is not None else DEFAULT_DIMENSION


def embed(text: str, cfg: RequestConfig) -> Optional[EmbeddingVector]:
    """Embed a single text with the configured embedding provider.

    Args:
        text: Text to embed.
        cfg: Request configuration (provider, model, credentials, endpoint, timeout).

    Returns:
        Optional[EmbeddingVector]: The vector, or None when no embedding was produced.
    """
    if not text or not text.strip():
        return None
    try:
        provider = get_embedding_provider(cfg.embedding_provider)
        provider.validate(cfg)
    except ConfigurationError as e:
        logger.warning("Embedding skipped: %s", e)
        return None
    values = provider.embed(text, cfg)
    if values is None:
        return None
    return EmbeddingVector(provider=provider.name, dimension=len(values), values=values)


def embed_batch(texts: List[str], cfg: RequestConfig) -> List[Tuple[int, EmbeddingVector]]:
    """Embed texts independently and keep only the successes.

    Uses a bounded thread pool when ``cfg.embedding_workers`` > 1. A failure
    for one text never affects the others.

    Returns:
        List[Tuple[int, EmbeddingVector]]: (position in ``texts``, vector) pairs in input order.
    """
    if not texts:
        return []
    workers = max(1, min(cfg.embedding_workers, len(texts)))
    if workers == 1:
        results = [embed(t, cfg) for t in texts]
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(lambda t: embed(t, cfg), texts))
    out = [(i, v) for i, v in enumerate(results) if v is not None]
    if len(out) < len(texts):
        logger.info("Embedded %d/%d texts with %s", len(out), len(texts), cfg.embedding_provider)
    return out
