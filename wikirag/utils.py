"""Utility helpers for ids, text chunking and file text extraction.

This module provides:
- stable_doc_id: stable SHA-1 based identifier for documents
- split_text: structure-aware chunking (sections, paragraphs, sentences, hard split)
- html_to_text: HTML to plain text using BeautifulSoup
- extract_text: plain text from uploaded file bytes by MIME type
"""
import hashlib
import logging
import re
import subprocess
import tempfile
from typing import Callable, List, Optional

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# Wiki-style headings: "== Title ==", "=== Sub ===" on their own line
HEADING_RE = re.compile(r"^(={2,})[ \t]*(.+?)[ \t]*\1[ \t]*$", re.MULTILINE)
PARAGRAPH_RE = re.compile(r"\n\s*\n")
SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def stable_doc_id(s: str) -> str:
    """Compute a stable 40-char SHA-1 hex identifier for a string.

    Args:
        s: Input string (e.g., a document title).

    Returns:
        str: First 40 hex characters of the SHA-1 digest.
    """
    return hashlib.sha1(s.encode("utf-8")).hexdigest()[:40]


def split_sections(text: str) -> List[str]:
    """Split text at heading lines, keeping each heading with its section body.

    Text before the first heading becomes its own leading section. Text
    without headings is returned as a single section.
    """
    starts = [m.start() for m in HEADING_RE.finditer(text)]
    if not starts:
        return [text]
    if starts[0] != 0:
        starts.insert(0, 0)
    bounds = starts + [len(text)]
    return [text[a:b] for a, b in zip(bounds, bounds[1:])]


def _accumulate(
    pieces: List[str],
    joiner: str,
    max_size: int,
    subdivide: Callable[[str, int], List[str]],
) -> List[str]:
    """Greedily pack pieces into buffers of at most max_size characters.

    The buffer is flushed when appending the next piece would exceed the
    limit. A piece that alone exceeds the limit is handed to ``subdivide``.
    """
    out: List[str] = []
    buf = ""
    for piece in pieces:
        piece = piece.strip()
        if not piece:
            continue
        if len(piece) > max_size:
            if buf:
                out.append(buf)
                buf = ""
            out.extend(subdivide(piece, max_size))
            continue
        candidate = f"{buf}{joiner}{piece}" if buf else piece
        if len(candidate) > max_size:
            out.append(buf)
            buf = piece
        else:
            buf = candidate
    if buf:
        out.append(buf)
    return out


def _hard_split(text: str, max_size: int) -> List[str]:
    return [text[i:i + max_size] for i in range(0, len(text), max_size)]


def _split_sentences(paragraph: str, max_size: int) -> List[str]:
    return _accumulate(SENTENCE_RE.split(paragraph), " ", max_size, _hard_split)


def _split_paragraphs(section: str, max_size: int) -> List[str]:
    return _accumulate(PARAGRAPH_RE.split(section), "\n\n", max_size, _split_sentences)


def split_text(text: str, max_chunk_size: int) -> List[str]:
    """Split text into ordered chunks of at most max_chunk_size characters.

    Priority: section headings (kept as content), then paragraph breaks, then
    sentence boundaries, and finally fixed-size slices for a single sentence
    longer than the limit. Empty and whitespace-only chunks are dropped.

    Args:
        text: Full document text.
        max_chunk_size: Maximum characters per chunk (must be positive).

    Returns:
        List[str]: Chunks in document order.
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if not text or not text.strip():
        return []
    chunks: List[str] = []
    for section in split_sections(text):
        section = section.strip()
        if not section:
            continue
        if len(section) <= max_chunk_size:
            chunks.append(section)
        else:
            chunks.extend(_split_paragraphs(section, max_chunk_size))
    return [c for c in (c.strip() for c in chunks) if c]


def html_to_text(html: str) -> str:
    """Convert HTML to plain text, one block per line.

    Scripts and styles are removed; headings (h1..h4) are rendered as wiki
    headings so that section-aware chunking still applies.
    """
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    for level, name in enumerate(["h1", "h2", "h3", "h4"], start=2):
        for h in soup.find_all(name):
            marks = "=" * level
            h.replace_with(f"\n\n{marks} {h.get_text(' ', strip=True)} {marks}\n\n")
    text = soup.get_text("\n")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def pdf_to_text(data: bytes) -> Optional[str]:
    """Extract text from PDF bytes with the ``pdftotext`` tool.

    Returns:
        Optional[str]: Extracted text, or None if the tool is missing or fails.
    """
    with tempfile.NamedTemporaryFile(suffix=".pdf") as tmp:
        tmp.write(data)
        tmp.flush()
        try:
            proc = subprocess.run(
                ["pdftotext", tmp.name, "-"], capture_output=True, timeout=60, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("pdftotext unavailable or timed out: %s", e)
            return None
    if proc.returncode != 0:
        logger.warning("pdftotext failed (rc=%d): %s", proc.returncode, proc.stderr[:200])
        return None
    return proc.stdout.decode("utf-8", errors="replace")


TEXT_MIME_TYPES = {"text/plain", "text/markdown", "text/csv", "text/x-wiki"}


def extract_text(data: bytes, mime_type: str) -> Optional[str]:
    """Extract indexable text from file bytes.

    Args:
        data: Raw file contents.
        mime_type: MIME type reported by the file store.

    Returns:
        Optional[str]: Text, or None for unsupported types.
    """
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime in TEXT_MIME_TYPES:
        return data.decode("utf-8", errors="replace")
    if mime in {"text/html", "application/xhtml+xml"}:
        return html_to_text(data.decode("utf-8", errors="replace"))
    if mime == "application/pdf":
        return pdf_to_text(data)
    logger.info("No text extractor for MIME type %s", mime_type)
    return None
