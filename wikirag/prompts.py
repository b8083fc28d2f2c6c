"""Prompt templates and prompt assembly.

Provides:
- truncate_context: hard character cap with a visible truncation marker
- load_prompt_file: default loader for custom-prompt document references
- instruction_header: custom prompt > custom prompt document > built-in template
- assemble_prompt: header + context block + question
- parse_markers: maps the model's sentinel/marker output onto GenerationStatus
"""
import logging
import re
from pathlib import Path
from typing import Callable, Optional, Tuple

from wikirag.config import RequestConfig
from wikirag.schemas import GenerationRequest, GenerationStatus, PromptMode

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[...truncated...]"
NO_CONTEXT_SENTINEL = "NO_MATCHING_CONTEXT"
SENTINEL_RE = re.compile(rf"[ \t]*{NO_CONTEXT_SENTINEL}[ \t]*")
GENERAL_KNOWLEDGE_MARKER = "[GENERAL_KNOWLEDGE]"
NO_CONTEXT_BLOCK = "(No additional context from the knowledge base was found.)"

WIKI_ONLY_TEMPLATE = (
    "You are an assistant helping answer questions about this wiki.\n"
    "Use ONLY the provided context to answer. "
    f"If the answer is not contained in the context, reply with exactly {NO_CONTEXT_SENTINEL} and nothing else.\n"
    "Cite the source title(s) mentioned in the context if relevant."
)

WIKI_PLUS_GENERAL_TEMPLATE = (
    "You are an assistant helping answer questions about this wiki.\n"
    "Prefer the provided context when it answers the question and cite the source title(s).\n"
    "If the context does not contain the answer, answer from your general knowledge and "
    f"begin your reply with {GENERAL_KNOWLEDGE_MARKER}."
)

PageLoader = Callable[[str], Optional[str]]


def truncate_context(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars`` characters, ending with a marker if cut."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return text[:keep].rstrip() + TRUNCATION_MARKER


def load_prompt_file(reference: str, prompt_dir: str) -> Optional[str]:
    """Read a custom prompt document from ``prompt_dir``.

    Args:
        reference: Document name relative to the prompt directory.
        prompt_dir: Directory holding prompt documents.

    Returns:
        Optional[str]: File contents, or None if missing or outside the directory.
    """
    base = Path(prompt_dir).resolve()
    path = (base / reference).resolve()
    if base != path and base not in path.parents:
        logger.warning("Refusing prompt reference outside %s: %s", base, reference)
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        logger.warning("Could not load custom prompt %s: %s", reference, e)
        return None


def instruction_header(mode: PromptMode, cfg: RequestConfig, page_loader: Optional[PageLoader] = None) -> str:
    """Select the instruction header.

    An operator-supplied literal prompt wins outright, then a custom-prompt
    document reference, then the built-in template for ``mode``.
    """
    if cfg.custom_prompt.strip():
        return cfg.custom_prompt.strip()
    if cfg.custom_prompt_page.strip():
        loader = page_loader or (lambda ref: load_prompt_file(ref, cfg.prompt_dir))
        loaded = loader(cfg.custom_prompt_page.strip())
        if loaded and loaded.strip():
            return loaded.strip()
        logger.warning("Custom prompt document %r is empty or missing; using built-in template",
                       cfg.custom_prompt_page)
    if mode == PromptMode.WIKI_PLUS_GENERAL:
        return WIKI_PLUS_GENERAL_TEMPLATE
    return WIKI_ONLY_TEMPLATE


def assemble_prompt(request: GenerationRequest, cfg: RequestConfig,
                    page_loader: Optional[PageLoader] = None) -> str:
    """Build the full prompt text for a generation request."""
    header = instruction_header(request.mode, cfg, page_loader)
    context = request.context.text.strip()
    context_block = truncate_context(context, cfg.context_max_chars) if context else NO_CONTEXT_BLOCK
    return (
        f"{header}\n\n"
        f"Context:\n{context_block}\n\n"
        f"User Question: {request.query}\n\n"
        "Answer:"
    )


def parse_markers(text: str) -> Tuple[GenerationStatus, str]:
    """Translate sentinel output into a status and the answer text without markers.

    A reply that opens with the no-context sentinel means no grounding; a
    sentinel anywhere else is removed from the answer text.
    """
    stripped = text.strip()
    if stripped.startswith(NO_CONTEXT_SENTINEL):
        return GenerationStatus.NO_GROUNDING, ""
    stripped = SENTINEL_RE.sub(" ", stripped).strip()
    if not stripped:
        return GenerationStatus.NO_GROUNDING, ""
    if GENERAL_KNOWLEDGE_MARKER in stripped:
        return GenerationStatus.GENERAL_KNOWLEDGE, stripped.replace(GENERAL_KNOWLEDGE_MARKER, "").strip()
    return GenerationStatus.ANSWER, stripped
