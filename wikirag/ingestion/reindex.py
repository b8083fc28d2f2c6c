"""Full re-index job.

Walks a directory, extracts text from every supported file, and (re)indexes
each one into the active index. Optionally provisions a fresh index first,
which is how an embedding dimension change is rolled out: the new index
becomes active because it is the most recent.

Usage:
  python -m wikirag.ingestion.reindex --path ./pages [--new-index]

Configuration:
- Search store: wikirag.config.settings.ELASTICSEARCH_URL
- Embeddings: wikirag.config.settings.EMBEDDING_PROVIDER / EMBEDDING_MODEL
- Chunk size: wikirag.config.settings.MAX_CHUNK_SIZE
"""
from __future__ import annotations

import argparse
import logging
import mimetypes
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from wikirag.config import RequestConfig, default_request_config, settings
from wikirag.errors import RetrievalUnavailable
from wikirag.index_manager import IndexManager
from wikirag.pipeline import IngestionPipeline
from wikirag.schemas import IngestionResult
from wikirag.search import SearchStoreClient

logger = logging.getLogger(__name__)

EXTENSION_MIME_TYPES = {
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".wiki": "text/x-wiki",
    ".html": "text/html",
    ".htm": "text/html",
    ".pdf": "application/pdf",
}


def guess_mime_type(path: Path) -> Optional[str]:
    mime = EXTENSION_MIME_TYPES.get(path.suffix.lower())
    if mime is None:
        mime, _ = mimetypes.guess_type(path.name)
    return mime


def iter_files(root: Path) -> Iterator[Tuple[Path, str]]:
    """Yield (path, mime_type) for supported files under ``root`` in sorted order."""
    for path in sorted(p for p in root.rglob("*") if p.is_file()):
        mime = guess_mime_type(path)
        if mime in EXTENSION_MIME_TYPES.values():
            yield path, mime
        else:
            logger.debug("Skipping unsupported file %s", path)


def title_for(path: Path, root: Path) -> str:
    """Document title from the relative path, e.g. ``Biology/Photosynthesis``."""
    rel = path.relative_to(root).with_suffix("")
    return "/".join(part.replace("_", " ") for part in rel.parts)


def reindex_directory(root: Path, pipeline: IngestionPipeline, cfg: RequestConfig) -> List[IngestionResult]:
    results: List[IngestionResult] = []
    for path, mime in iter_files(root):
        title = title_for(path, root)
        logger.info("Reindexing page => %s", title)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning("Could not read %s: %s", path, e)
            results.append(IngestionResult(document_id=title, title=title, success=False, error=str(e)))
            continue
        results.append(pipeline.ingest_file(title, data, mime, cfg))
    return results


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Re-index every document in a directory.")
    parser.add_argument("--path", required=True, help="Directory containing documents to index")
    parser.add_argument("--new-index", action="store_true",
                        help="Provision a fresh index before indexing (e.g. after changing embedding model)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    root = Path(args.path)
    if not root.is_dir():
        logger.error("Not a directory: %s", root)
        return 2

    cfg = default_request_config()
    store = SearchStoreClient(settings.ELASTICSEARCH_URL, timeout=settings.SEARCH_TIMEOUT)
    manager = IndexManager(store, prefix=cfg.index_prefix)
    if args.new_index:
        try:
            desc = manager.create_index(cfg.embedding_provider)
        except RetrievalUnavailable as e:
            logger.error("Could not create a new index: %s", e)
            return 1
        logger.info("Provisioned new index %s (dims=%s)", desc.name, desc.dimension)

    results = reindex_directory(root, IngestionPipeline(store, manager), cfg)
    failed = [r for r in results if not r.success]
    for r in failed:
        logger.warning("Failed: %s (%s)", r.title, r.error)
    logger.info("Completed re-index: %d documents, %d failed", len(results), len(failed))
    print(f"[REINDEX] {root} -> {len(results) - len(failed)}/{len(results)} documents")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
