"""Ingestion and query orchestration.

- IngestionPipeline: chunk -> embed -> write to the active index, per document.
  Failures are logged and reported in an IngestionResult; a batch re-index
  never stops because one document failed.
- QueryPipeline: validate -> retrieve -> generate, returning a ChatResponse.
  Every internal error is converted to a user-facing message here.
"""
import logging
from typing import Dict, Iterable, List, Optional

from wikirag.config import RequestConfig, parse_temperature
from wikirag.embedding import embed_batch
from wikirag.errors import (
    USER_MESSAGES,
    ConfigurationError,
    EmbeddingDimensionMismatch,
    RetrievalUnavailable,
    ValidationError,
    WikiRagError,
    user_message,
)
from wikirag.generation import GenerationDispatcher, get_generation_provider
from wikirag.index_manager import IndexManager
from wikirag.obs import Trace, span
from wikirag.retrieval import Retriever
from wikirag.schemas import (
    Attachment,
    ChatResponse,
    Chunk,
    Document,
    EmbeddingVector,
    GenerationRequest,
    GenerationStatus,
    IngestionResult,
    PromptMode,
    RetrievedContext,
)
from wikirag.search import VECTOR_FIELD, SearchStoreClient
from wikirag.utils import extract_text, split_text, stable_doc_id

logger = logging.getLogger(__name__)


def chunk_document(document: Document, max_chunk_size: int) -> List[Chunk]:
    return [
        Chunk(document_id=document.id, ordinal=i, text=text)
        for i, text in enumerate(split_text(document.text, max_chunk_size))
    ]


def chunk_doc_id(document_id: str, ordinal: int) -> str:
    return f"{document_id}_chunk_{ordinal}"


class IngestionPipeline:
    """(Re)indexes documents into the active index."""

    def __init__(self, store: SearchStoreClient, index_manager: Optional[IndexManager] = None,
                 embedder=embed_batch):
        self.store = store
        self.index_manager = index_manager or IndexManager(store)
        self.embedder = embedder

    def ingest(self, document: Document, cfg: RequestConfig) -> IngestionResult:
        """Chunk, embed and index one document, replacing its previous chunks.

        Chunks whose embedding fails are skipped. A vector whose dimension
        differs from the index mapping fails the whole document for that index.
        """
        result = IngestionResult(document_id=document.id, title=document.title)
        try:
            desc = self.index_manager.ensure_index(cfg.embedding_provider)
            result.index = desc.name
            chunks = chunk_document(document, cfg.max_chunk_size)
            result.chunks_total = len(chunks)

            vectors: Dict[int, EmbeddingVector] = {}
            if cfg.embeddings_enabled and chunks:
                vectors = dict(self.embedder([c.text for c in chunks], cfg))
                for vec in vectors.values():
                    if desc.dimension is not None and vec.dimension != desc.dimension:
                        raise EmbeddingDimensionMismatch(
                            f"Index {desc.name} declares {desc.dimension} dims but "
                            f"{vec.provider} produced {vec.dimension}"
                        )
            write_vectors = cfg.embeddings_enabled and desc.vector_enabled

            self.store.delete_by_document(desc.name, document.id)
            for chunk in chunks:
                if cfg.embeddings_enabled and chunk.ordinal not in vectors:
                    logger.warning("No embedding for %s (chunk %d); skipping", document.title, chunk.ordinal)
                    result.chunks_skipped += 1
                    continue
                body = {
                    "title": document.title,
                    "document_id": document.id,
                    "chunk_index": chunk.ordinal,
                    "content": chunk.text,
                }
                if write_vectors:
                    body[VECTOR_FIELD] = vectors[chunk.ordinal].values
                try:
                    self.store.index_document(desc.name, chunk_doc_id(document.id, chunk.ordinal), body)
                except RetrievalUnavailable as e:
                    logger.warning("Failed to index %s (chunk %d): %s", document.title, chunk.ordinal, e)
                    result.chunks_skipped += 1
                    continue
                result.chunks_indexed += 1
            if result.chunks_indexed:
                self.store.refresh(desc.name)
        except WikiRagError as e:
            logger.error("Ingestion failed for %s: %s", document.title, e)
            result.success = False
            result.error = str(e) or user_message(e)
            return result

        logger.info("Indexed %s into %s: %d/%d chunks", document.title, result.index,
                    result.chunks_indexed, result.chunks_total)
        return result

    def ingest_text(self, title: str, text: str, cfg: RequestConfig,
                    document_id: Optional[str] = None) -> IngestionResult:
        doc = Document(id=document_id or stable_doc_id(title), title=title, text=text)
        return self.ingest(doc, cfg)

    def ingest_file(self, title: str, data: bytes, mime_type: str, cfg: RequestConfig,
                    document_id: Optional[str] = None) -> IngestionResult:
        """Extract text from an uploaded file and index it."""
        doc_id = document_id or stable_doc_id(title)
        text = extract_text(data, mime_type)
        if not text or not text.strip():
            logger.warning("Failed to extract text from file: %s (%s)", title, mime_type)
            return IngestionResult(document_id=doc_id, title=title, success=False,
                                   error=f"No text could be extracted from {mime_type} file")
        return self.ingest(Document(id=doc_id, title=title, text=text), cfg)

    def reindex_all(self, documents: Iterable[Document], cfg: RequestConfig) -> List[IngestionResult]:
        """Ingest every document; a failing document never stops the batch."""
        results: List[IngestionResult] = []
        for doc in documents:
            try:
                results.append(self.ingest(doc, cfg))
            except Exception as e:
                logger.exception("Unexpected error re-indexing %s", doc.title)
                results.append(IngestionResult(document_id=doc.id, title=doc.title,
                                               success=False, error=str(e)))
        ok = sum(1 for r in results if r.success)
        logger.info("Re-indexed %d/%d documents", ok, len(results))
        return results


def select_mode(cfg: RequestConfig, allow_general_knowledge: bool) -> PromptMode:
    if cfg.custom_prompt.strip() or cfg.custom_prompt_page.strip():
        return PromptMode.CUSTOM_PROMPT
    return PromptMode.WIKI_PLUS_GENERAL if allow_general_knowledge else PromptMode.WIKI_ONLY


def _failed(message: str) -> ChatResponse:
    return ChatResponse(answer=message, status=GenerationStatus.FAILED)


class QueryPipeline:
    """Answers one user query from the active index."""

    def __init__(self, store: SearchStoreClient, index_manager: Optional[IndexManager] = None,
                 retriever: Optional[Retriever] = None, dispatcher: Optional[GenerationDispatcher] = None):
        self.store = store
        self.index_manager = index_manager or IndexManager(store)
        self.retriever = retriever or Retriever(store)
        self.dispatcher = dispatcher or GenerationDispatcher()

    def _retrieve(self, message: str, cfg: RequestConfig) -> RetrievedContext:
        index = self.index_manager.active_index_name()
        if index is None:
            raise RetrievalUnavailable("No active index")
        with span("retrieve", {"index": index, "mode": cfg.search_mode}):
            return self.retriever.retrieve(message, index, cfg)

    def ask(self, message: str, cfg: RequestConfig, allow_general_knowledge: Optional[bool] = None,
            attachments: Optional[List[Attachment]] = None) -> ChatResponse:
        """Answer ``message``.

        Args:
            message: User question.
            cfg: Request configuration including any per-request overrides.
            allow_general_knowledge: Overrides cfg.allow_general_knowledge when given.
            attachments: Optional image attachments.

        Returns:
            ChatResponse: Answer text, source titles for grounded answers and the status tag.
        """
        message = (message or "").strip()
        if not message:
            return _failed(USER_MESSAGES["empty-question"])
        if len(message) > cfg.max_message_length:
            return _failed(USER_MESSAGES["question-too-long"])

        allow_general = cfg.allow_general_knowledge if allow_general_knowledge is None else allow_general_knowledge
        trace = Trace("chat", input={"message": message, "provider": cfg.provider})

        try:
            get_generation_provider(cfg.provider).validate(cfg)
            parse_temperature(cfg.temperature)
        except (ConfigurationError, ValidationError) as e:
            logger.warning("Rejected chat request: %s", e)
            trace.end(output={"status": "rejected"})
            return _failed(user_message(e))

        context = RetrievedContext()
        try:
            context = self._retrieve(message, cfg)
        except RetrievalUnavailable as e:
            if not allow_general:
                logger.warning("Retrieval unavailable: %s", e)
                trace.end(output={"status": "no-index"})
                return _failed(user_message(e))
            logger.warning("Retrieval unavailable, answering without grounding: %s", e)
        except ConfigurationError as e:
            logger.error("Retrieval misconfigured: %s", e)
            trace.end(output={"status": "config-invalid"})
            return _failed(user_message(e))
        trace.event("retrieval", {"hits": len(context.hits), "strategy": context.strategy})

        request = GenerationRequest(
            query=message,
            context=context,
            mode=select_mode(cfg, allow_general),
            attachments=list(attachments or []),
        )
        with span("generate", {"provider": cfg.provider, "model": cfg.model}):
            result = self.dispatcher.dispatch(request, cfg)

        if result.status == GenerationStatus.FAILED:
            response = _failed(result.diagnostic or USER_MESSAGES["generation-failed"])
        elif result.status == GenerationStatus.NO_GROUNDING:
            response = ChatResponse(answer=USER_MESSAGES["no-results"], status=result.status)
        else:
            source = None
            if result.status == GenerationStatus.ANSWER and context.sources:
                source = ", ".join(dict.fromkeys(context.sources))
            response = ChatResponse(answer=result.text, source=source, status=result.status)

        trace.generation("answer", prompt=message, output=response.answer, model=cfg.model,
                         metadata={"status": response.status.value, "attempts": result.attempts})
        trace.end(output={"status": response.status.value})
        return response
