"""Application package for the wiki retrieval-augmented answering service.

Submodules overview:
- main: FastAPI application exposing /health, /chat and /index.
- config: Process settings and the immutable per-request configuration.
- errors: Error taxonomy and user-facing messages.
- schemas: Pydantic data model (documents, chunks, hits, requests, results).
- utils: Chunk splitting, stable ids and file text extraction.
- embedding: Embedding provider registry and batch embedding.
- search: HTTP client for the Elasticsearch-compatible search store.
- index_manager: Discovery, creation and mapping migration of the active index.
- retrieval: Lexical, vector and hybrid retrieval with context assembly.
- attachments: Loading image attachment bytes for multi-modal prompts.
- prompts: Prompt templates and prompt assembly.
- generation: Generation provider registry and the retrying dispatcher.
- pipeline: Ingestion and query orchestration.
- ingestion: Offline re-index job.
- obs: Observability utilities (tracing/spans).
"""
