"""Pydantic data model shared by the pipelines and the HTTP surface.

Core records:
- Document, Chunk, EmbeddingVector, IndexDescriptor, SearchHit, RetrievedContext
- Attachment, ChatAttachment, GenerationRequest, GenerationResult (tagged by GenerationStatus)
- IngestionResult

API contracts:
- ChatRequest / ChatResponse for POST /chat
- IndexRequest for POST /index
"""
from enum import Enum
from typing import List, Optional, Union

from pydantic import Base64Bytes, BaseModel, ConfigDict, Field


class Attachment(BaseModel):
    """A binary attachment reference.

    Bytes are taken from ``data`` if present, otherwise from ``cache_path``,
    otherwise fetched from ``url``.
    """
    name: str = ""
    mime_type: str
    data: Optional[bytes] = None
    cache_path: Optional[str] = None
    url: Optional[str] = None


class ChatAttachment(BaseModel):
    """Inline image sent with a chat request; ``data`` is base64 in the JSON body.

    Cache paths and URLs are set only by the host application, never by API callers.
    """
    name: str = ""
    mime_type: str
    data: Base64Bytes

    def to_attachment(self) -> Attachment:
        return Attachment(name=self.name, mime_type=self.mime_type, data=self.data)


class Document(BaseModel):
    """A source document supplied by the host content system. Never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    text: str
    attachments: List[Attachment] = Field(default_factory=list)


class Chunk(BaseModel):
    """Bounded contiguous slice of a document, the unit of embedding and indexing."""
    model_config = ConfigDict(frozen=True)

    document_id: str
    ordinal: int
    text: str

    @property
    def length(self) -> int:
        return len(self.text)


class EmbeddingVector(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    dimension: int
    values: List[float]


class IndexDescriptor(BaseModel):
    """Active index name, its declared vector dimension and whether the vector field exists."""
    name: str
    dimension: Optional[int] = None
    vector_enabled: bool = False


class SearchHit(BaseModel):
    title: str
    content: str
    score: float
    chunk_index: Optional[int] = None
    document_id: Optional[str] = None


class RetrievedContext(BaseModel):
    """Ranked hits for one query plus the context block built from them.

    ``hits`` are deduplicated by title. ``text`` concatenates the top hits with
    a header naming source and score and never exceeds the configured cap.
    """
    hits: List[SearchHit] = Field(default_factory=list)
    text: str = ""
    sources: List[str] = Field(default_factory=list)
    strategy: str = "lexical"

    @property
    def is_empty(self) -> bool:
        return not self.hits or not self.text.strip()


class PromptMode(str, Enum):
    WIKI_ONLY = "wiki-only"
    WIKI_PLUS_GENERAL = "wiki-plus-general-knowledge"
    CUSTOM_PROMPT = "custom-prompt"


class GenerationStatus(str, Enum):
    ANSWER = "answer"
    NO_GROUNDING = "no_grounding"
    GENERAL_KNOWLEDGE = "general_knowledge"
    FAILED = "failed"


class GenerationRequest(BaseModel):
    query: str
    context: RetrievedContext = Field(default_factory=RetrievedContext)
    mode: PromptMode = PromptMode.WIKI_ONLY
    attachments: List[Attachment] = Field(default_factory=list)


class GenerationResult(BaseModel):
    """Outcome of a generation request.

    ``success`` is False for FAILED results, in which case ``diagnostic`` holds
    a human-readable reason and ``text`` is None (never an empty string).
    """
    status: GenerationStatus
    text: Optional[str] = None
    diagnostic: Optional[str] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.status != GenerationStatus.FAILED

    @classmethod
    def failed(cls, diagnostic: str, attempts: int = 0) -> "GenerationResult":
        return cls(status=GenerationStatus.FAILED, diagnostic=diagnostic, attempts=attempts)


class IngestionResult(BaseModel):
    document_id: str
    title: str
    index: Optional[str] = None
    chunks_total: int = 0
    chunks_indexed: int = 0
    chunks_skipped: int = 0
    success: bool = True
    error: Optional[str] = None


class ChatRequest(BaseModel):
    """Request body for POST /chat.

    Attributes:
        message: The user question.
        allow_general_knowledge: Permit answers beyond the wiki content.
        attachments: Optional inline image attachments (base64 data).
        provider/model/api_key/api_endpoint/temperature/timeout: per-request overrides.
    """
    message: str = Field(..., description="User question")
    allow_general_knowledge: Optional[bool] = None
    attachments: List[ChatAttachment] = Field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None
    api_key: Optional[str] = None
    api_endpoint: Optional[str] = None
    temperature: Optional[Union[float, str]] = None
    timeout: Optional[float] = None
    max_tokens: Optional[int] = None


class ChatResponse(BaseModel):
    answer: str
    source: Optional[str] = None
    status: GenerationStatus


class IndexRequest(BaseModel):
    title: str = Field(..., min_length=1)
    text: str
    document_id: Optional[str] = None
