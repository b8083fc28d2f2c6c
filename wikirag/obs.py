"""Observability utilities: optional Langfuse tracing and OpenTelemetry spans.

- Trace: thin wrapper over a Langfuse trace. It is inert unless LANGFUSE_HOST,
  LANGFUSE_PUBLIC_KEY and LANGFUSE_SECRET_KEY are all configured.
- span: OpenTelemetry span context manager around pipeline stages.

Tracing failures are logged at debug level and never affect a request.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from langfuse import Langfuse
from opentelemetry import trace

from wikirag.config import settings

logger = logging.getLogger(__name__)

_langfuse_client: Optional[Langfuse] = None


def _init_langfuse() -> Optional[Langfuse]:
    """Initialize and memoize a Langfuse client if configuration is present.

    Returns:
        Optional[Langfuse]: A client when all LANGFUSE_* settings are set; otherwise None.
    """
    global _langfuse_client
    if _langfuse_client is not None:
        return _langfuse_client
    if settings.LANGFUSE_HOST and settings.LANGFUSE_PUBLIC_KEY and settings.LANGFUSE_SECRET_KEY:
        _langfuse_client = Langfuse(
            host=settings.LANGFUSE_HOST,
            public_key=settings.LANGFUSE_PUBLIC_KEY,
            secret_key=settings.LANGFUSE_SECRET_KEY,
        )
        return _langfuse_client
    return None


@contextmanager
def span(name: str, attributes: Optional[Dict[str, Any]] = None):
    """Run the enclosed block inside an OpenTelemetry span.

    Uses whatever tracer provider the host process installed; without one the
    OpenTelemetry API hands out non-recording spans.
    """
    tracer = trace.get_tracer("wikirag")
    with tracer.start_as_current_span(name) as otel_span:
        for k, v in (attributes or {}).items():
            if v is not None:
                otel_span.set_attribute(k, v)
        yield otel_span


class Trace:
    """Minimal wrapper for a Langfuse trace that is a no-op when not configured."""

    def __init__(self, name: str, input: Optional[Dict[str, Any]] = None):
        self.name = name
        self.enabled = False
        self._trace = None
        client = _init_langfuse()
        if client is not None:
            try:
                self._trace = client.trace(name=name, input=input or {})
                self.enabled = True
            except Exception as e:
                logger.debug("Langfuse trace %s could not be created: %s", name, e)

    def event(self, name: str, data: Optional[Dict[str, Any]] = None):
        """Record a structured event on the trace if Langfuse is enabled."""
        if not self.enabled:
            return
        try:
            self._trace.event(name=name, input=data or {})
        except Exception as e:
            logger.debug("Langfuse event %s dropped: %s", name, e)

    def generation(self, name: str, prompt: str, output: str, model: str = "",
                   metadata: Optional[Dict[str, Any]] = None):
        """Record a generation with input/output text and optional metadata."""
        if not self.enabled:
            return
        try:
            self._trace.generation(name=name, input=prompt, output=output,
                                   metadata=metadata or {}, model=model)
        except Exception as e:
            logger.debug("Langfuse generation %s dropped: %s", name, e)

    def end(self, output: Optional[Dict[str, Any]] = None):
        """Finalize the trace with an optional output payload."""
        if not self.enabled:
            return
        try:
            self._trace.update(output=output or {})
        except Exception as e:
            logger.debug("Langfuse trace %s could not be finalized: %s", self.name, e)
