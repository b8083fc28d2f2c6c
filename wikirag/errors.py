"""Error taxonomy for the indexing, retrieval and generation pipelines.

Every error carries a stable ``code``. Pipelines catch these errors at their
boundary and convert them into a user-facing message via ``user_message``;
none of them are meant to reach the HTTP layer or the host application.
"""
from typing import Optional


class WikiRagError(Exception):
    """Base class for all pipeline errors."""

    code = "internal-error"

    def __init__(self, message: str = "", code: Optional[str] = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class ConfigurationError(WikiRagError):
    """Missing credentials/endpoint or an unknown provider."""

    code = "config-invalid"


class EmbeddingDimensionMismatch(ConfigurationError):
    """Embedding dimension differs from the index mapping's declared dimension."""

    code = "dimension-mismatch"


class ValidationError(WikiRagError):
    """Request parameters rejected before dispatch."""

    code = "invalid-request"


class RetrievalUnavailable(WikiRagError):
    """No active index, or the search store cannot be reached."""

    code = "no-index"


class EmbeddingFailure(WikiRagError):
    """No embedding was produced for a text."""

    code = "embedding-failed"


class ProviderError(WikiRagError):
    """Generation provider call failed."""

    code = "generation-failed"

    def __init__(self, message: str = "", status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message, code=code)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Overloaded / rate limited; eligible for retry."""

    code = "provider-overloaded"


class PermanentProviderError(ProviderError):
    """Auth failure, malformed request, quota and every other non-retryable error."""


class MalformedResponse(PermanentProviderError):
    """Provider answered but the payload could not be understood."""

    code = "malformed-response"


class AttachmentError(PermanentProviderError):
    """Attachment bytes could not be obtained."""

    code = "attachment-unavailable"


USER_MESSAGES = {
    "empty-question": "Please enter a question.",
    "question-too-long": "Your question is too long. Please shorten it and try again.",
    "config-invalid": "The assistant is not configured correctly. Please contact an administrator.",
    "dimension-mismatch": "The search index does not match the configured embedding model. Please re-index.",
    "invalid-request": "The request was invalid.",
    "invalid-temperature": "Temperature must be a number between 0 and 1.",
    "invalid-attachment": "Only image attachments are supported.",
    "no-index": "No search index is available yet. Please index some content first.",
    "no-results": "I could not find any relevant information in the wiki to answer your question.",
    "embedding-failed": "Could not compute an embedding for the text.",
    "generation-failed": "The language model could not generate a response. Please try again later.",
    "provider-overloaded": "The language model is busy right now. Please try again in a moment.",
    "malformed-response": "The language model returned an unexpected response.",
    "attachment-unavailable": "An attached file could not be loaded.",
    "internal-error": "Something went wrong while processing your request.",
}


def user_message(error: Exception) -> str:
    """Map an exception to the user-facing message for its code.

    Validation errors keep their specific diagnostic so callers can tell the
    user which parameter was rejected.
    """
    code = getattr(error, "code", "internal-error")
    if isinstance(error, ValidationError) and str(error):
        return str(error)
    return USER_MESSAGES.get(code, USER_MESSAGES["internal-error"])
