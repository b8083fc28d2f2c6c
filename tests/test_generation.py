"""
Test suite for generation providers and the generation dispatcher.

Provider HTTP calls go through mocked sessions; retry back-off sleeps are
recorded instead of slept.
"""

import base64
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import requests

from tests.conftest import StubGenerationProvider, make_response, make_session
from wikirag.attachments import LoadedImage
from wikirag.errors import USER_MESSAGES, MalformedResponse, PermanentProviderError, TransientProviderError
from wikirag.generation import (
    ANTHROPIC_API_URL,
    AnthropicProvider,
    AzureProvider,
    CallParams,
    GeminiProvider,
    GenerationDispatcher,
    OllamaProvider,
    OpenAIProvider,
    classify_status,
    normalize_response,
)
from wikirag.schemas import (
    Attachment,
    GenerationRequest,
    GenerationStatus,
    PromptMode,
    RetrievedContext,
    SearchHit,
)

PNG = b"\x89PNG\r\n\x1a\nfake"


@pytest.fixture
def context():
    hit = SearchHit(title="Photosynthesis", content="Plants convert light into chemical energy.", score=4.2)
    return RetrievedContext(
        hits=[hit],
        text="Source: Photosynthesis (score: 4.20)\nPlants convert light into chemical energy.",
        sources=["Photosynthesis"],
    )


@pytest.fixture
def params():
    return CallParams(model="m", temperature=0.2, max_tokens=64, timeout=5, api_key="k", api_endpoint="")


@pytest.fixture
def image():
    return LoadedImage("leaf.png", "image/png", PNG)


def _use_ollama(monkeypatch, cfg, *responses):
    """Route the dispatcher to an Ollama provider backed by canned responses."""
    session = make_session(*responses)
    provider = OllamaProvider(session=session)
    monkeypatch.setattr("wikirag.generation.get_generation_provider", lambda name: provider)
    return session, cfg.with_overrides(provider="ollama", api_endpoint="http://llm:11434/api/")


class TestClassifyStatus:

    @pytest.mark.parametrize("status", [429, 503, 529])
    def test_transient(self, status) -> None:
        assert isinstance(classify_status(status), TransientProviderError)

    @pytest.mark.parametrize("status", [400, 401, 403, 404, 500])
    def test_permanent(self, status) -> None:
        err = classify_status(status, "nope")
        assert isinstance(err, PermanentProviderError)
        assert err.status_code == status


class TestNormalizeResponse:

    def test_strips_control_characters(self) -> None:
        assert normalize_response("  Hello\x07world\x00 ") == "Hello world"

    def test_keeps_newlines_and_tabs(self) -> None:
        assert normalize_response("a\n\tb") == "a\n\tb"

    @pytest.mark.parametrize("raw", ["", "   ", "\x01\x02", None, 42, {"text": "x"}])
    def test_empty_or_non_text_is_none(self, raw) -> None:
        assert normalize_response(raw) is None


class TestProviderEnvelopes:

    def test_ollama(self, params, image) -> None:
        session = make_session(make_response(200, {"response": "green"}))
        p = CallParams(**{**params.__dict__, "api_endpoint": "http://llm:11434/api"})

        assert OllamaProvider(session=session).generate("q", [image], p) == "green"
        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == "http://llm:11434/api/generate"
        assert payload["stream"] is False
        assert payload["images"] == [base64.b64encode(PNG).decode("ascii")]
        assert payload["options"] == {"temperature": 0.2, "num_predict": 64}

    def test_anthropic(self, params, image) -> None:
        session = make_session(make_response(200, {"content": [{"type": "text", "text": "green"}]}))

        assert AnthropicProvider(session=session).generate("q", [image], params) == "green"
        assert session.post.call_args.args[0] == ANTHROPIC_API_URL
        headers = session.post.call_args.kwargs["headers"]
        assert headers["x-api-key"] == "k"
        assert headers["anthropic-version"] == "2023-06-01"
        content = session.post.call_args.kwargs["json"]["messages"][0]["content"]
        assert content[0]["source"]["media_type"] == "image/png"
        assert content[-1] == {"type": "text", "text": "q"}

    def test_anthropic_without_text_block(self, params) -> None:
        session = make_session(make_response(200, {"content": [{"type": "tool_use"}]}))
        with pytest.raises(MalformedResponse):
            AnthropicProvider(session=session).generate("q", [], params)

    def test_azure(self, params, image) -> None:
        endpoint = "https://x.openai.azure.com/openai/deployments/gpt/chat/completions?api-version=2024-02-01"
        p = CallParams(**{**params.__dict__, "api_endpoint": endpoint})
        session = make_session(make_response(200, {"choices": [{"message": {"content": "green"}}]}))

        assert AzureProvider(session=session).generate("q", [image], p) == "green"
        assert session.post.call_args.args[0] == endpoint
        assert session.post.call_args.kwargs["headers"]["api-key"] == "k"
        parts = session.post.call_args.kwargs["json"]["messages"][0]["content"]
        assert parts[1]["image_url"]["url"].startswith("data:image/png;base64,")

    def test_gemini(self, params, image) -> None:
        body = {"candidates": [{"content": {"parts": [{"text": "green"}]}}]}
        session = make_session(make_response(200, body))

        assert GeminiProvider(session=session).generate("q", [image], params) == "green"
        assert session.post.call_args.args[0].endswith("/models/m:generateContent")
        parts = session.post.call_args.kwargs["json"]["contents"][0]["parts"]
        assert parts[1]["inline_data"]["mime_type"] == "image/png"

    def test_gemini_missing_candidates(self, params) -> None:
        session = make_session(make_response(200, {"candidates": []}))
        with pytest.raises(MalformedResponse):
            GeminiProvider(session=session).generate("q", [], params)

    def test_openai_uses_sdk(self, params, monkeypatch) -> None:
        fake = MagicMock()
        message = SimpleNamespace(content="green")
        fake.return_value.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=message)]
        )
        monkeypatch.setattr("wikirag.generation.OpenAI", fake)

        assert OpenAIProvider().generate("q", [], params) == "green"
        assert fake.call_args.kwargs["base_url"] is None
        assert fake.call_args.kwargs["max_retries"] == 0
        sent = fake.return_value.chat.completions.create.call_args.kwargs
        assert sent["messages"] == [{"role": "user", "content": "q"}]

    def test_invalid_json(self, params) -> None:
        session = make_session(make_response(200, ValueError("bad")))
        with pytest.raises(MalformedResponse):
            GeminiProvider(session=session).generate("q", [], params)

    def test_transport_error_is_permanent(self, params) -> None:
        session = make_session(requests.Timeout("slow"))
        with pytest.raises(PermanentProviderError):
            AnthropicProvider(session=session).generate("q", [], params)


class TestDispatcherRetry:

    def test_transient_errors_are_retried(self, cfg, context, monkeypatch, fake_sleep, sleeps) -> None:
        session, ocfg = _use_ollama(
            monkeypatch, cfg,
            make_response(503, text="busy"),
            make_response(503, text="busy"),
            make_response(200, {"response": "Chlorophyll absorbs light."}),
        )

        result = GenerationDispatcher(sleep=fake_sleep).dispatch(GenerationRequest(query="q", context=context), ocfg)

        assert result.status == GenerationStatus.ANSWER
        assert result.text == "Chlorophyll absorbs light."
        assert result.attempts == 3
        assert session.post.call_count == 3
        assert sleeps == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self, cfg, context, monkeypatch, fake_sleep, sleeps) -> None:
        _, ocfg = _use_ollama(monkeypatch, cfg, *[make_response(529, text="overloaded")] * 3)

        result = GenerationDispatcher(sleep=fake_sleep).dispatch(GenerationRequest(query="q", context=context), ocfg)

        assert result.status == GenerationStatus.FAILED
        assert result.text is None
        assert result.diagnostic == USER_MESSAGES["provider-overloaded"]
        assert result.attempts == 3
        assert len(sleeps) == 2

    def test_permanent_error_is_not_retried(self, cfg, context, monkeypatch, fake_sleep, sleeps) -> None:
        session, ocfg = _use_ollama(monkeypatch, cfg, make_response(401, text="unauthorized"))

        result = GenerationDispatcher(sleep=fake_sleep).dispatch(GenerationRequest(query="q", context=context), ocfg)

        assert result.status == GenerationStatus.FAILED
        assert result.diagnostic == USER_MESSAGES["generation-failed"]
        assert result.attempts == 1
        assert session.post.call_count == 1
        assert sleeps == []

    def test_attachments_reach_provider(self, cfg, context, monkeypatch, fake_sleep) -> None:
        session, ocfg = _use_ollama(monkeypatch, cfg, make_response(200, {"response": "A leaf."}))
        request = GenerationRequest(query="What is this?", context=context,
                                    attachments=[Attachment(name="leaf.png", mime_type="image/png", data=PNG)])

        result = GenerationDispatcher(sleep=fake_sleep).dispatch(request, ocfg)

        assert result.text == "A leaf."
        assert session.post.call_args.kwargs["json"]["images"] == [base64.b64encode(PNG).decode("ascii")]


class TestDispatcher:

    def test_answer(self, cfg, context) -> None:
        result = GenerationDispatcher().dispatch(GenerationRequest(query="What do plants do?", context=context), cfg)

        assert result.success
        assert result.status == GenerationStatus.ANSWER
        assert result.text == "It converts light to energy."
        assert result.attempts == 1
        assert "Source: Photosynthesis" in StubGenerationProvider.prompts[0]

    def test_wiki_only_without_context_makes_no_call(self, cfg) -> None:
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q"), cfg)

        assert result.status == GenerationStatus.NO_GROUNDING
        assert result.text is None
        assert StubGenerationProvider.prompts == []

    def test_sentinel_output_means_no_grounding(self, cfg, context) -> None:
        StubGenerationProvider.reply = {"text": "NO_MATCHING_CONTEXT"}
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context), cfg)
        assert result.status == GenerationStatus.NO_GROUNDING
        assert result.success

    def test_general_knowledge_answer(self, cfg) -> None:
        StubGenerationProvider.reply = {"text": "[GENERAL_KNOWLEDGE] The sky scatters blue light."}
        request = GenerationRequest(query="Why is the sky blue?", mode=PromptMode.WIKI_PLUS_GENERAL)

        result = GenerationDispatcher().dispatch(request, cfg)

        assert result.status == GenerationStatus.GENERAL_KNOWLEDGE
        assert result.text == "The sky scatters blue light."

    @pytest.mark.parametrize("reply", [{"text": "  \x00\x01  "}, {"text": None}, {"other": "x"}])
    def test_empty_or_missing_text_fails(self, cfg, context, reply) -> None:
        StubGenerationProvider.reply = reply
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context), cfg)
        assert result.status == GenerationStatus.FAILED
        assert result.text is None
        assert result.diagnostic == USER_MESSAGES["malformed-response"]

    @pytest.mark.parametrize("temperature", ["1.5", "hot", -1])
    def test_invalid_temperature_rejected_before_call(self, cfg, context, temperature) -> None:
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context),
                                                 cfg.with_overrides(temperature=temperature))
        assert result.status == GenerationStatus.FAILED
        assert "Temperature" in result.diagnostic
        assert StubGenerationProvider.prompts == []

    def test_string_temperature_accepted(self, cfg, context) -> None:
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context),
                                                 cfg.with_overrides(temperature="0.3"))
        assert result.status == GenerationStatus.ANSWER

    def test_missing_api_key_rejected(self, cfg, context) -> None:
        ocfg = cfg.with_overrides(provider="anthropic", api_key="")
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context), ocfg)
        assert result.status == GenerationStatus.FAILED
        assert result.diagnostic == USER_MESSAGES["config-invalid"]

    def test_unknown_provider_rejected(self, cfg, context) -> None:
        result = GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context),
                                                 cfg.with_overrides(provider="hal9000"))
        assert result.status == GenerationStatus.FAILED

    def test_custom_prompt_used(self, cfg, context) -> None:
        GenerationDispatcher().dispatch(GenerationRequest(query="q", context=context),
                                        cfg.with_overrides(custom_prompt="Answer in French."))
        assert StubGenerationProvider.prompts[0].startswith("Answer in French.")

    def test_page_loader_used_for_prompt_document(self, cfg, context) -> None:
        dispatcher = GenerationDispatcher(page_loader=lambda ref: f"Prompt from {ref}")
        dispatcher.dispatch(GenerationRequest(query="q", context=context),
                            cfg.with_overrides(custom_prompt_page="MediaWiki:Prompt"))
        assert StubGenerationProvider.prompts[0].startswith("Prompt from MediaWiki:Prompt")


class TestAttachments:

    def test_non_image_rejected(self, cfg, context) -> None:
        request = GenerationRequest(query="q", context=context,
                                    attachments=[Attachment(name="a.pdf", mime_type="application/pdf", data=b"%PDF")])

        result = GenerationDispatcher().dispatch(request, cfg)

        assert result.status == GenerationStatus.FAILED
        assert "Unsupported attachment type" in result.diagnostic
        assert StubGenerationProvider.prompts == []

    def test_unloadable_attachment_fails_closed(self, cfg, context, tmp_path) -> None:
        request = GenerationRequest(query="q", context=context,
                                    attachments=[Attachment(name="gone.png", mime_type="image/png",
                                                            cache_path="gone.png")])

        result = GenerationDispatcher().dispatch(request, cfg.with_overrides(attachment_cache_dir=str(tmp_path)))

        assert result.status == GenerationStatus.FAILED
        assert result.diagnostic == USER_MESSAGES["attachment-unavailable"]
        assert StubGenerationProvider.prompts == []

    def test_cache_then_url(self, cfg, context, tmp_path) -> None:
        (tmp_path / "leaf.png").write_bytes(PNG)
        session = MagicMock()
        request = GenerationRequest(query="q", context=context,
                                    attachments=[Attachment(name="leaf.png", mime_type="image/png",
                                                            cache_path="leaf.png", url="http://wiki/leaf.png")])

        result = GenerationDispatcher(session=session).dispatch(
            request, cfg.with_overrides(attachment_cache_dir=str(tmp_path)))

        assert result.status == GenerationStatus.ANSWER
        session.get.assert_not_called()

    def test_url_fetch(self, cfg, context) -> None:
        session = MagicMock()
        session.get.return_value = SimpleNamespace(status_code=200, content=PNG)
        request = GenerationRequest(query="q", context=context,
                                    attachments=[Attachment(name="leaf.png", mime_type="image/png",
                                                            url="http://wiki/leaf.png")])

        result = GenerationDispatcher(session=session).dispatch(request, cfg)

        assert result.status == GenerationStatus.ANSWER
        session.get.assert_called_once_with("http://wiki/leaf.png", timeout=cfg.attachment_timeout)
