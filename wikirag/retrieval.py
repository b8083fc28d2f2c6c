"""Retrieval of grounding context from the active index.

This module implements:
- build_lexical_query: multi_match over title (boosted) and content with fuzziness
- build_vector_query: script_score cosine similarity against the chunk vectors
- fuse_hits: min-max normalization and alpha-weighted blend of both result lists
- Retriever.retrieve: strategy selection, de-duplication by title and context assembly

The strategy is a configuration choice (SEARCH_MODE). The only automatic
fallback is that a failed query embedding degrades that single query to
lexical search; SEARCH_FALLBACK_TO_LEXICAL additionally retries lexically when
vector search finds nothing.
"""
import logging
from typing import Callable, Dict, List, Optional

from wikirag.config import RequestConfig
from wikirag.embedding import embed
from wikirag.errors import ConfigurationError
from wikirag.prompts import truncate_context
from wikirag.schemas import EmbeddingVector, RetrievedContext, SearchHit
from wikirag.search import VECTOR_FIELD, SearchStoreClient

logger = logging.getLogger(__name__)

SEARCH_MODES = {"lexical", "vector", "hybrid"}
# script_score adds this to cosine similarity because scores must be non-negative
COSINE_OFFSET = 1.0
# Fetch extra hits so that de-duplication by title still leaves max_results
OVERFETCH = 3


def build_lexical_query(query: str, size: int, min_score: float) -> Dict:
    return {
        "query": {
            "multi_match": {
                "query": query,
                "fields": ["title^2", "content"],
                "type": "best_fields",
                "fuzziness": "AUTO",
            }
        },
        "size": size,
        "min_score": min_score,
        "_source": {"excludes": [VECTOR_FIELD]},
    }


def build_vector_query(vector: List[float], size: int, min_similarity: float) -> Dict:
    return {
        "query": {
            "script_score": {
                "query": {"bool": {"filter": {"exists": {"field": VECTOR_FIELD}}}},
                "script": {
                    "source": f"cosineSimilarity(params.query_vector, '{VECTOR_FIELD}') + {COSINE_OFFSET}",
                    "params": {"query_vector": vector},
                },
            }
        },
        "size": size,
        "min_score": min_similarity + COSINE_OFFSET,
        "_source": {"excludes": [VECTOR_FIELD]},
    }


def _to_hit(raw: Dict, score_offset: float = 0.0) -> SearchHit:
    src = raw.get("_source") or {}
    return SearchHit(
        title=src.get("title") or "Untitled",
        content=src.get("content") or "",
        score=float(raw.get("_score") or 0.0) - score_offset,
        chunk_index=src.get("chunk_index"),
        document_id=src.get("document_id") or raw.get("_id"),
    )


def _hit_key(hit: SearchHit) -> str:
    return f"{hit.document_id}:{hit.chunk_index}"


def _min_max_norm(xs: List[float]) -> List[float]:
    """Min-max normalize a list of scores to [0, 1].

    Args:
        xs: Sequence of numeric scores.

    Returns:
        List[float]: Normalized scores; a constant non-empty list maps to ones.
    """
    if not xs:
        return []
    mn, mx = min(xs), max(xs)
    if mx - mn <= 1e-12:
        return [1.0 for _ in xs]
    return [(x - mn) / (mx - mn) for x in xs]


def fuse_hits(lexical: List[SearchHit], vector: List[SearchHit], alpha: float) -> List[SearchHit]:
    """Blend lexical and vector results into one ranking.

    Each list is min-max normalized separately; a hit missing from one list
    contributes 0 for that list. Final score = alpha * vector + (1 - alpha) * lexical.
    """
    alpha = max(0.0, min(1.0, alpha))
    lex_norm = dict(zip([_hit_key(h) for h in lexical], _min_max_norm([h.score for h in lexical])))
    vec_norm = dict(zip([_hit_key(h) for h in vector], _min_max_norm([h.score for h in vector])))
    by_key: Dict[str, SearchHit] = {}
    for h in vector + lexical:
        by_key.setdefault(_hit_key(h), h)
    fused = []
    for key, h in by_key.items():
        score = alpha * vec_norm.get(key, 0.0) + (1 - alpha) * lex_norm.get(key, 0.0)
        fused.append(h.model_copy(update={"score": score}))
    fused.sort(key=lambda x: x.score, reverse=True)
    return fused


def dedupe_by_title(hits: List[SearchHit]) -> List[SearchHit]:
    """Keep the first (best ranked) hit per title, preserving order."""
    seen = set()
    out: List[SearchHit] = []
    for h in hits:
        if h.title in seen:
            continue
        seen.add(h.title)
        out.append(h)
    return out


def build_context(hits: List[SearchHit], max_chars: int) -> str:
    """Concatenate hits with a per-hit source/score header, capped at max_chars."""
    blocks = [f"Source: {h.title} (score: {h.score:.2f})\n{h.content.strip()}" for h in hits]
    return truncate_context("\n\n".join(blocks), max_chars)


class Retriever:
    """Turns a query into a RetrievedContext using the configured strategy."""

    def __init__(self, store: SearchStoreClient,
                 embedder: Callable[[str, RequestConfig], Optional[EmbeddingVector]] = embed):
        self.store = store
        self.embedder = embedder

    def lexical_search(self, query: str, index: str, size: int, cfg: RequestConfig) -> List[SearchHit]:
        raw = self.store.search(index, build_lexical_query(query, size, cfg.lexical_min_score))
        return [_to_hit(r) for r in raw]

    def vector_search(self, vector: List[float], index: str, size: int, cfg: RequestConfig) -> List[SearchHit]:
        raw = self.store.search(index, build_vector_query(vector, size, cfg.vector_min_similarity))
        return [_to_hit(r, score_offset=COSINE_OFFSET) for r in raw]

    def retrieve(self, query: str, index: str, cfg: RequestConfig,
                 max_results: Optional[int] = None) -> RetrievedContext:
        """Retrieve ranked, de-duplicated context for ``query``.

        Args:
            query: User query text.
            index: Active index name.
            cfg: Request configuration.
            max_results: Number of hits to keep (defaults to cfg.top_k).

        Returns:
            RetrievedContext: Empty when nothing scored above the floor.

        Raises:
            RetrievalUnavailable: If the store cannot be reached.
            ConfigurationError: If SEARCH_MODE is not recognised.
        """
        mode = cfg.search_mode
        if mode not in SEARCH_MODES:
            raise ConfigurationError(f"Unknown search mode: {mode!r}")
        k = cfg.top_k if max_results is None else max_results
        if k <= 0:
            return RetrievedContext(strategy=mode)
        size = k * OVERFETCH

        qvec = None
        if mode in ("vector", "hybrid"):
            qvec = self.embedder(query, cfg)
            if qvec is None:
                logger.warning("Query embedding failed; using lexical search for this query")
                mode = "lexical"

        if mode == "lexical":
            hits = self.lexical_search(query, index, size, cfg)
        elif mode == "vector":
            hits = self.vector_search(qvec.values, index, size, cfg)
            if not hits and cfg.search_fallback_to_lexical:
                logger.info("Vector search found nothing; falling back to lexical search")
                mode = "lexical"
                hits = self.lexical_search(query, index, size, cfg)
        else:
            hits = fuse_hits(
                self.lexical_search(query, index, size, cfg),
                self.vector_search(qvec.values, index, size, cfg),
                cfg.hybrid_alpha,
            )

        hits = dedupe_by_title(hits)[:k]
        logger.debug("Retrieved %d hits (%s) for query %r", len(hits), mode, query[:80])
        if not hits:
            return RetrievedContext(strategy=mode)

        context_hits = hits[: max(1, cfg.context_hits)]
        return RetrievedContext(
            hits=hits,
            text=build_context(context_hits, cfg.context_max_chars),
            sources=[h.title for h in context_hits],
            strategy=mode,
        )
