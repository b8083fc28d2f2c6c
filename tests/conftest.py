"""
Shared test fixtures.

Provides: an in-memory search store that understands the query bodies the
retriever sends, stub embedding/generation providers registered under the
id "stub", request configurations, and sample wiki documents.
"""

import hashlib
import math
import re
from typing import Dict, List
from unittest.mock import MagicMock

import pytest

from wikirag.config import RequestConfig, Settings
from wikirag.embedding import EmbeddingProvider, register_embedding_provider
from wikirag.errors import EmbeddingFailure, RetrievalUnavailable
from wikirag.generation import GenerationProvider, _dig, register_generation_provider
from wikirag.schemas import Document
from wikirag.search import VECTOR_FIELD

STUB_DIMENSION = 16


def _tokens(text: str) -> List[str]:
    return re.findall(r"[a-z0-9]+", (text or "").lower())


class FakeSearchStore:
    """In-memory stand-in for SearchStoreClient."""

    def __init__(self):
        self.indices: Dict[str, Dict] = {}
        self.fail_put_mapping = False
        self.unreachable = False
        self.searches: List[Dict] = []

    def _check(self):
        if self.unreachable:
            raise RetrievalUnavailable("store down")

    def _get(self, name):
        if name not in self.indices:
            raise RetrievalUnavailable(f"no such index {name}", code="no-index")
        return self.indices[name]

    def add_index(self, name, properties=None):
        self.indices[name] = {"properties": dict(properties or {}), "docs": {}}

    def list_indices(self):
        self._check()
        return list(self.indices)

    def create_index(self, name, body):
        self._check()
        self.add_index(name, body["mappings"]["properties"])

    def get_mapping(self, name):
        self._check()
        return self._get(name)["properties"]

    def put_mapping(self, name, properties):
        self._check()
        if self.fail_put_mapping:
            raise RetrievalUnavailable("mapping update rejected")
        self._get(name)["properties"].update(properties)

    def index_document(self, name, doc_id, body):
        self._check()
        self._get(name)["docs"][doc_id] = dict(body)

    def delete_by_document(self, name, document_id):
        self._check()
        docs = self._get(name)["docs"]
        doomed = [k for k, v in docs.items() if v.get("document_id") == document_id]
        for k in doomed:
            del docs[k]
        return len(doomed)

    def refresh(self, name):
        self._check()

    def docs(self, name):
        return self._get(name)["docs"]

    def search(self, name, body):
        self._check()
        self.searches.append(body)
        query = body["query"]
        scored = []
        for doc_id, doc in self._get(name)["docs"].items():
            if "multi_match" in query:
                q = _tokens(query["multi_match"]["query"])
                title = _tokens(doc.get("title"))
                content = _tokens(doc.get("content"))
                score = max(2.0 * sum(title.count(t) for t in q), float(sum(content.count(t) for t in q)))
            else:
                vec = doc.get(VECTOR_FIELD)
                if vec is None:
                    continue
                qv = query["script_score"]["script"]["params"]["query_vector"]
                score = _cosine(qv, vec) + 1.0
            if score >= body.get("min_score", 0):
                source = {k: v for k, v in doc.items() if k != VECTOR_FIELD}
                scored.append({"_id": doc_id, "_score": score, "_source": source})
        scored.sort(key=lambda h: h["_score"], reverse=True)
        return scored[: body.get("size", 10)]


def _cosine(a, b):
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    return dot / (na * nb) if na and nb else 0.0


def stub_vector(text: str) -> List[float]:
    """Deterministic bag-of-words vector."""
    vec = [0.0] * STUB_DIMENSION
    for tok in _tokens(text):
        vec[int(hashlib.md5(tok.encode()).hexdigest(), 16) % STUB_DIMENSION] += 1.0
    if not any(vec):
        vec[0] = 1.0
    return vec


class StubEmbeddingProvider(EmbeddingProvider):
    name = "stub"
    dimension = STUB_DIMENSION
    fail_on = set()

    def _embed(self, text, cfg):
        if any(marker in text for marker in self.fail_on):
            raise EmbeddingFailure("stub failure")
        return stub_vector(text)


class StubGenerationProvider(GenerationProvider):
    name = "stub"
    requires_api_key = False
    reply = {"text": "It converts light to energy."}
    prompts: List[str] = []
    images: List[list] = []

    def generate(self, prompt, images, params):
        type(self).prompts.append(prompt)
        type(self).images.append(list(images))
        return _dig(self.reply, "text")


@pytest.fixture(autouse=True)
def stub_providers():
    register_embedding_provider(StubEmbeddingProvider)
    register_generation_provider(StubGenerationProvider)
    StubEmbeddingProvider.fail_on = set()
    StubGenerationProvider.reply = {"text": "It converts light to energy."}
    StubGenerationProvider.prompts = []
    StubGenerationProvider.images = []
    yield


@pytest.fixture
def base_config() -> RequestConfig:
    return RequestConfig.from_settings(Settings(_env_file=None))


@pytest.fixture
def cfg(base_config) -> RequestConfig:
    """Configuration wired to the stub providers."""
    return base_config.with_overrides(
        provider="stub",
        model="stub-model",
        temperature=0.3,
        embedding_provider="stub",
        search_mode="lexical",
        max_chunk_size=500,
        backoff_base_seconds=0.5,
    )


@pytest.fixture
def store() -> FakeSearchStore:
    return FakeSearchStore()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append


def make_response(status_code: int = 200, payload=None, text: str = ""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text or (str(payload) if payload is not None else "")
    if isinstance(payload, Exception):
        resp.json.side_effect = payload
    else:
        resp.json.return_value = payload
    return resp


def make_session(*responses):
    session = MagicMock()
    session.post.side_effect = list(responses)
    return session


LIGHT_SENTENCES = [
    "Photosynthesis is the process by which green plants convert light energy into chemical energy.",
    "Chlorophyll inside the chloroplast absorbs red and blue light most strongly.",
    "Water molecules are split during the light reactions and oxygen is released as a by-product.",
    "The energy captured from sunlight is stored temporarily in ATP and NADPH.",
    "Thylakoid membranes host the protein complexes known as photosystem one and photosystem two.",
]
CALVIN_SENTENCES = [
    "The Calvin cycle takes place in the stroma of the chloroplast.",
    "Carbon dioxide from the air is fixed by the enzyme RuBisCO into an organic molecule.",
    "ATP and NADPH from the light reactions power the reduction of carbon compounds.",
    "Some of the resulting sugar is exported to build glucose, sucrose and starch.",
    "The remaining molecules regenerate ribulose bisphosphate so the cycle can continue.",
]


def _paragraphs(sentences: List[str], count: int) -> str:
    paras = []
    for i in range(count):
        rotated = sentences[i % len(sentences):] + sentences[: i % len(sentences)]
        paras.append(" ".join(rotated))
    return "\n\n".join(paras)


def photosynthesis_text() -> str:
    """Roughly 2000 words with two ==Section== headings."""
    return (
        _paragraphs(LIGHT_SENTENCES, 5)
        + "\n\n==Light reactions==\n"
        + _paragraphs(LIGHT_SENTENCES, 13)
        + "\n\n==Calvin cycle==\n"
        + _paragraphs(CALVIN_SENTENCES, 15)
    )


@pytest.fixture
def photosynthesis_doc() -> Document:
    return Document(id="page-1", title="Photosynthesis", text=photosynthesis_text())


@pytest.fixture
def mitochondria_doc() -> Document:
    return Document(
        id="page-2",
        title="Mitochondria",
        text="Mitochondria are organelles that produce ATP through cellular respiration. "
             "They have their own DNA and a double membrane.",
    )
