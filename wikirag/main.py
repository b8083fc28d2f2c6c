"""FastAPI application entrypoint and routes.

Exposes /health, /chat and /index. Each request builds its own immutable
RequestConfig from the process settings plus any per-request overrides and
hands it to the query or ingestion pipeline.
"""
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from wikirag.config import default_request_config, settings
from wikirag.errors import USER_MESSAGES, ValidationError, user_message
from wikirag.index_manager import IndexManager
from wikirag.pipeline import IngestionPipeline, QueryPipeline
from wikirag.schemas import ChatRequest, ChatResponse, GenerationStatus, IndexRequest, IngestionResult
from wikirag.search import SearchStoreClient

app = FastAPI(title="Wiki RAG API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_credentials=True,
    allow_headers=["*"],
)

store = SearchStoreClient(settings.ELASTICSEARCH_URL, timeout=settings.SEARCH_TIMEOUT)
index_manager = IndexManager(store, prefix=settings.INDEX_PREFIX)
query_pipeline = QueryPipeline(store, index_manager)
ingestion_pipeline = IngestionPipeline(store, index_manager)


@app.get("/health")
def health():
    """Liveness check endpoint.

    Returns:
        dict: {"status": "ok"} when the service is running.
    """
    return {"status": "ok"}


@app.post("/chat", response_model=ChatResponse)
def chat(req: ChatRequest) -> ChatResponse:
    """Answer a user question using retrieval-augmented generation.

    Per-request provider/model/credential/endpoint/temperature/timeout
    overrides apply to this request only.
    """
    if len(req.message) > settings.MAX_MESSAGE_LENGTH:
        raise HTTPException(status_code=422, detail=USER_MESSAGES["question-too-long"])
    try:
        cfg = default_request_config().with_overrides(
            provider=req.provider,
            model=req.model,
            api_key=req.api_key,
            api_endpoint=req.api_endpoint,
            temperature=req.temperature,
            timeout=req.timeout,
            max_tokens=req.max_tokens,
        )
    except ValidationError as e:
        return ChatResponse(answer=user_message(e), status=GenerationStatus.FAILED)
    return query_pipeline.ask(
        req.message,
        cfg,
        allow_general_knowledge=req.allow_general_knowledge,
        attachments=[a.to_attachment() for a in req.attachments],
    )


@app.post("/index", response_model=IngestionResult)
def index_document(req: IndexRequest) -> IngestionResult:
    """(Re)index one document supplied by the host content system."""
    return ingestion_pipeline.ingest_text(req.title, req.text, default_request_config(),
                                          document_id=req.document_id)
