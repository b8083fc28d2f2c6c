"""Answer generation across interchangeable LLM providers.

Provides:
- GenerationProvider subclasses (ollama, openai, anthropic, azure, gemini), each
  encoding the prompt and any images in its own request envelope and
  normalizing its response envelope into plain text.
- register_generation_provider / get_generation_provider: registry keyed by provider id.
- normalize_response: strips control characters; empty output counts as failure.
- GenerationDispatcher: validate -> assemble prompt -> dispatch with retry ->
  normalize. Transient errors (429/503/529) are retried with exponential
  backoff via tenacity; everything else fails immediately. The dispatcher
  always returns a GenerationResult and never raises.
"""
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type
from urllib.parse import quote

import requests
from openai import APIStatusError, OpenAI, OpenAIError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from wikirag.attachments import LoadedImage, load_attachments
from wikirag.config import RequestConfig, clamp_max_tokens, parse_temperature
from wikirag.errors import (
    ConfigurationError,
    MalformedResponse,
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
    ValidationError,
    WikiRagError,
    user_message,
)
from wikirag.prompts import PageLoader, assemble_prompt, parse_markers
from wikirag.schemas import GenerationRequest, GenerationResult, GenerationStatus, PromptMode

logger = logging.getLogger(__name__)

# 429 Too Many Requests, 503 Service Unavailable, 529 Overloaded (Anthropic)
TRANSIENT_STATUS_CODES = {429, 503, 529}
CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]+")

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


@dataclass(frozen=True)
class CallParams:
    """Validated parameters for one provider call."""
    model: str
    temperature: float
    max_tokens: int
    timeout: float
    api_key: str
    api_endpoint: str


def classify_status(status_code: int, body: str = "") -> ProviderError:
    """Map a non-200 HTTP status onto the transient/permanent error classes."""
    msg = f"HTTP {status_code}: {body[:200]}"
    if status_code in TRANSIENT_STATUS_CODES:
        return TransientProviderError(msg, status_code=status_code)
    return PermanentProviderError(msg, status_code=status_code)


class GenerationProvider:
    """Base generation provider."""
    name = "base"
    default_model = ""
    requires_api_key = True
    requires_endpoint = False

    def __init__(self, session: Optional[requests.Session] = None):
        self.session = session or requests.Session()

    def validate(self, cfg: RequestConfig) -> None:
        if self.requires_api_key and not cfg.api_key:
            raise ConfigurationError(f"Provider '{self.name}' requires an API key")
        if self.requires_endpoint and not cfg.api_endpoint:
            raise ConfigurationError(f"Provider '{self.name}' requires an API endpoint")

    def generate(self, prompt: str, images: List[LoadedImage], params: CallParams) -> Any:
        """Return the provider's answer text (unnormalized); raise ProviderError on failure."""
        raise NotImplementedError

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Dict[str, str], timeout: float) -> Any:
        try:
            resp = self.session.post(url, json=payload, headers=headers, timeout=timeout)
        except requests.RequestException as e:
            raise PermanentProviderError(f"{self.name} request failed: {e}")
        if resp.status_code != 200:
            raise classify_status(resp.status_code, resp.text)
        try:
            return resp.json()
        except ValueError:
            raise MalformedResponse(f"{self.name} returned invalid JSON")


def _dig(data: Any, *path: Any) -> Any:
    """Follow keys/indexes into a decoded JSON payload, raising MalformedResponse if absent."""
    cur = data
    for key in path:
        try:
            cur = cur[key]
        except (KeyError, IndexError, TypeError):
            raise MalformedResponse(f"response is missing {'/'.join(str(p) for p in path)}")
    return cur


def _chat_content(prompt: str, images: List[LoadedImage]) -> Any:
    """OpenAI-style message content: plain string, or text + data-URL image parts."""
    if not images:
        return prompt
    parts: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
    for img in images:
        parts.append({"type": "image_url", "image_url": {"url": img.data_url}})
    return parts


class OllamaProvider(GenerationProvider):
    """Local model server: POST {endpoint}/generate -> {"response": "..."}."""
    name = "ollama"
    default_model = "gemma:2b"
    requires_api_key = False
    requires_endpoint = True

    def generate(self, prompt: str, images: List[LoadedImage], params: CallParams) -> Any:
        payload: Dict[str, Any] = {
            "model": params.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": params.temperature, "num_predict": params.max_tokens},
        }
        if images:
            payload["images"] = [img.b64 for img in images]
        url = params.api_endpoint.rstrip("/") + "/generate"
        data = self._post_json(url, payload, {"Content-Type": "application/json"}, params.timeout)
        return _dig(data, "response")


class OpenAIProvider(GenerationProvider):
    """OpenAI chat completions through the official SDK.

    The endpoint is used as base URL only when it looks like an
    OpenAI-compatible ``.../v1`` URL.
    """
    name = "openai"
    default_model = "gpt-4o-mini"

    def generate(self, prompt: str, images: List[LoadedImage], params: CallParams) -> Any:
        base_url = params.api_endpoint if params.api_endpoint.rstrip("/").endswith("/v1") else None
        client = OpenAI(api_key=params.api_key, base_url=base_url, timeout=params.timeout, max_retries=0)
        try:
            resp = client.chat.completions.create(
                model=params.model,
                messages=[{"role": "user", "content": _chat_content(prompt, images)}],
                temperature=params.temperature,
                max_tokens=params.max_tokens,
            )
        except APIStatusError as e:
            raise classify_status(e.status_code, str(e))
        except OpenAIError as e:
            raise PermanentProviderError(f"openai request failed: {e}")
        if not resp.choices:
            raise MalformedResponse("openai response has no choices")
        return resp.choices[0].message.content


class AnthropicProvider(GenerationProvider):
    """Anthropic messages API; images as base64 source blocks."""
    name = "anthropic"
    default_model = "claude-3-haiku-20240307"

    def generate(self, prompt: str, images: List[LoadedImage], params: CallParams) -> Any:
        content: List[Dict[str, Any]] = [
            {"type": "image", "source": {"type": "base64", "media_type": img.mime_type, "data": img.b64}}
            for img in images
        ]
        content.append({"type": "text", "text": prompt})
        url = params.api_endpoint if "anthropic" in params.api_endpoint else ANTHROPIC_API_URL
        data = self._post_json(
            url,
            {
                "model": params.model,
                "messages": [{"role": "user", "content": content}],
                "max_tokens": params.max_tokens,
                "temperature": params.temperature,
            },
            {
                "Content-Type": "application/json",
                "x-api-key": params.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
            params.timeout,
        )
        for block in _dig(data, "content"):
            if isinstance(block, dict) and block.get("type") == "text":
                return block.get("text")
        raise MalformedResponse("anthropic response has no text block")


class AzureProvider(GenerationProvider):
    """Azure OpenAI; the endpoint is the full deployment chat-completions URL."""
    name = "azure"
    requires_endpoint = True

    def generate(self, prompt: str, images: List[LoadedImage], params: CallParams) -> Any:
        data = self._post_json(
            params.api_endpoint,
            {
                "messages": [{"role": "user", "content": _chat_content(prompt, images)}],
                "max_tokens": params.max_tokens,
                "temperature": params.temperature,
            },
            {"Content-Type": "application/json", "api-key": params.api_key},
            params.timeout,
        )
        return _dig(data, "choices", 0, "message", "content")


class GeminiProvider(GenerationProvider):
    """Gemini generateContent; images as inline_data parts."""
    name = "gemini"
    default_model = "gemini-1.5-flash"

    def generate(self, prompt: str, images: List[LoadedImage], params: CallParams) -> Any:
        base = params.api_endpoint if "generativelanguage" in params.api_endpoint else GEMINI_API_BASE
        url = f"{base.rstrip('/')}/models/{quote(params.model, safe='')}:generateContent"
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        for img in images:
            parts.append({"inline_data": {"mime_type": img.mime_type, "data": img.b64}})
        data = self._post_json(
            url,
            {
                "contents": [{"role": "user", "parts": parts}],
                "generationConfig": {"temperature": params.temperature, "maxOutputTokens": params.max_tokens},
            },
            {"Content-Type": "application/json", "x-goog-api-key": params.api_key},
            params.timeout,
        )
        return _dig(data, "candidates", 0, "content", "parts", 0, "text")


_PROVIDERS: Dict[str, Type[GenerationProvider]] = {}
_instances: Dict[str, GenerationProvider] = {}


def register_generation_provider(cls: Type[GenerationProvider]) -> Type[GenerationProvider]:
    """Register (or replace) a generation provider class under ``cls.name``."""
    _PROVIDERS[cls.name] = cls
    _instances.pop(cls.name, None)
    return cls


for _cls in (OllamaProvider, OpenAIProvider, AnthropicProvider, AzureProvider, GeminiProvider):
    register_generation_provider(_cls)


def get_generation_provider(name: str) -> GenerationProvider:
    """Return the cached provider instance for ``name``.

    Raises:
        ConfigurationError: If no provider is registered under that name.
    """
    key = (name or "").lower()
    if key not in _PROVIDERS:
        raise ConfigurationError(f"Unknown LLM provider: {name!r}")
    if key not in _instances:
        _instances[key] = _PROVIDERS[key]()
    return _instances[key]


def normalize_response(raw: Any) -> Optional[str]:
    """Strip control characters and surrounding whitespace.

    Returns:
        Optional[str]: Clean text, or None if the response is not text or is empty.
    """
    if not isinstance(raw, str):
        return None
    clean = CONTROL_CHARS_RE.sub(" ", raw).strip()
    return clean or None


class GenerationDispatcher:
    """Runs one generation request through validation, prompting, retry and normalization."""

    def __init__(self, sleep: Callable[[float], None] = time.sleep,
                 page_loader: Optional[PageLoader] = None,
                 session: Optional[requests.Session] = None):
        self.sleep = sleep
        self.page_loader = page_loader
        self.session = session

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0
        logger.warning("Transient provider error on attempt %d (%s); retrying in %.2fs",
                       state.attempt_number, exc, delay)

    def _call_with_retry(self, provider: GenerationProvider, prompt: str, images: List[LoadedImage],
                         params: CallParams, cfg: RequestConfig, attempts: List[int]) -> Any:
        retryer = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(max(1, cfg.max_attempts)),
            wait=wait_exponential(multiplier=cfg.backoff_base_seconds, exp_base=2),
            sleep=self.sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )
        for attempt in retryer:
            with attempt:
                attempts[0] += 1
                return provider.generate(prompt, images, params)

    def dispatch(self, request: GenerationRequest, cfg: RequestConfig) -> GenerationResult:
        """Generate an answer for ``request``.

        Args:
            request: Query, retrieved context, prompt mode and attachments.
            cfg: Request configuration (provider, model, credentials, limits).

        Returns:
            GenerationResult: ANSWER / GENERAL_KNOWLEDGE with text, NO_GROUNDING,
            or FAILED with a diagnostic. Never raises.
        """
        try:
            provider = get_generation_provider(cfg.provider)
            provider.validate(cfg)
            temperature = parse_temperature(cfg.temperature)
        except (ConfigurationError, ValidationError) as e:
            logger.warning("Generation request rejected: %s", e)
            return GenerationResult.failed(user_message(e))

        if request.mode == PromptMode.WIKI_ONLY and request.context.is_empty and not request.attachments:
            return GenerationResult(status=GenerationStatus.NO_GROUNDING)

        attempts = [0]
        try:
            images = load_attachments(request.attachments, cfg.attachment_cache_dir,
                                      cfg.attachment_timeout, self.session)
            prompt = assemble_prompt(request, cfg, self.page_loader)
            params = CallParams(
                model=cfg.model or provider.default_model,
                temperature=temperature,
                max_tokens=clamp_max_tokens(cfg.max_tokens),
                timeout=cfg.timeout,
                api_key=cfg.api_key,
                api_endpoint=cfg.api_endpoint,
            )
            raw = self._call_with_retry(provider, prompt, images, params, cfg, attempts)
        except TransientProviderError as e:
            logger.error("%s still overloaded after %d attempt(s): %s", provider.name, attempts[0], e)
            return GenerationResult.failed(user_message(e), attempts=attempts[0])
        except WikiRagError as e:
            logger.error("%s generation failed: %s", provider.name, e)
            return GenerationResult.failed(user_message(e), attempts=attempts[0])

        text = normalize_response(raw)
        if text is None:
            logger.error("%s returned an empty or non-text response", provider.name)
            return GenerationResult.failed(user_message(MalformedResponse()), attempts=attempts[0])

        status, text = parse_markers(text)
        if status == GenerationStatus.NO_GROUNDING:
            return GenerationResult(status=status, attempts=attempts[0])
        if not text:
            return GenerationResult.failed(user_message(MalformedResponse()), attempts=attempts[0])
        return GenerationResult(status=status, text=text, attempts=attempts[0])
