"""HTTP client for the Elasticsearch-compatible search store.

Wraps the handful of REST calls the pipelines need:
- list_indices: GET /_cat/indices?format=json
- create_index / get_mapping / put_mapping: index lifecycle
- index_document / delete_by_document / refresh: chunk writes
- search: POST /{index}/_search, returning the raw hit list

Connection problems and unexpected status codes raise RetrievalUnavailable.
Every call uses its own timeout so a slow store never eats into the budget of
embedding or generation calls.
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from wikirag.errors import RetrievalUnavailable

logger = logging.getLogger(__name__)

VECTOR_FIELD = "content_vector"

HEADERS = {"Content-Type": "application/json"}


def index_mapping(dimension: int) -> Dict[str, Any]:
    """Mapping for a content index with a cosine dense_vector field of ``dimension``."""
    return {
        "mappings": {
            "properties": {
                "title": {"type": "text", "fields": {"keyword": {"type": "keyword"}}},
                "document_id": {"type": "keyword"},
                "chunk_index": {"type": "integer"},
                "content": {"type": "text"},
                VECTOR_FIELD: vector_field_mapping(dimension),
            }
        }
    }


def vector_field_mapping(dimension: int) -> Dict[str, Any]:
    return {"type": "dense_vector", "dims": dimension, "index": True, "similarity": "cosine"}


class SearchStoreClient:
    """Thin requests-based client bound to one store URL."""

    def __init__(self, base_url: str, timeout: float = 10, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
                 ok: tuple = (200, 201)) -> Any:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            resp = self.session.request(method, url, json=body, headers=HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            raise RetrievalUnavailable(f"Search store unreachable ({method} {url}): {e}")
        if resp.status_code not in ok:
            raise RetrievalUnavailable(
                f"Search store returned HTTP {resp.status_code} for {method} {url}: {resp.text[:200]}",
                code="no-index" if resp.status_code == 404 else "internal-error",
            )
        try:
            return resp.json()
        except ValueError:
            raise RetrievalUnavailable(f"Search store returned invalid JSON for {method} {url}")

    def list_indices(self) -> List[str]:
        data = self._request("GET", "_cat/indices?format=json")
        if not isinstance(data, list):
            return []
        return [row["index"] for row in data if isinstance(row, dict) and "index" in row]

    def create_index(self, name: str, body: Dict[str, Any]) -> None:
        self._request("PUT", quote(name), body)
        logger.info("Created index %s", name)

    def get_mapping(self, name: str) -> Dict[str, Any]:
        """Return the ``properties`` of the index mapping (empty dict if none)."""
        data = self._request("GET", f"{quote(name)}/_mapping")
        entry = data.get(name) if isinstance(data, dict) else None
        if not isinstance(entry, dict):
            return {}
        return ((entry.get("mappings") or {}).get("properties")) or {}

    def put_mapping(self, name: str, properties: Dict[str, Any]) -> None:
        self._request("PUT", f"{quote(name)}/_mapping", {"properties": properties})

    def index_document(self, name: str, doc_id: str, body: Dict[str, Any]) -> None:
        self._request("PUT", f"{quote(name)}/_doc/{quote(doc_id, safe='')}", body)

    def delete_by_document(self, name: str, document_id: str) -> int:
        """Delete every chunk of ``document_id``; returns the number deleted."""
        data = self._request(
            "POST", f"{quote(name)}/_delete_by_query",
            {"query": {"term": {"document_id": document_id}}},
        )
        return int(data.get("deleted", 0)) if isinstance(data, dict) else 0

    def refresh(self, name: str) -> None:
        self._request("POST", f"{quote(name)}/_refresh")

    def search(self, name: str, body: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = self._request("POST", f"{quote(name)}/_search", body)
        try:
            hits = data["hits"]["hits"]
        except (KeyError, TypeError):
            return []
        return hits if isinstance(hits, list) else []
