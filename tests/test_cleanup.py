import asyncio
import json
from types import SimpleNamespace

import anthropic
import httpx
import openai
import pytest

from coati import cleanup
from coati.cleanup import (
    CLOUD_BUDGET,
    ON_DEVICE_BUDGET,
    CleanupRequest,
    TranscriptCleanupService,
    build_prompt,
    parse_cloud_provider_response,
)
from coati.errors import (
    ApiKeyMissing,
    ProviderUnavailable,
    RequestFailed,
    ResponseParsingFailed,
    TranscriptTooLong,
    TranscriptTooShort,
)
from coati.keystore import MemorySecretStore
from coati.models import Provider, ProviderConfiguration

from conftest import GOOD_RESPONSE, FakeSend, fake_providers

ANTHROPIC = ProviderConfiguration(Provider.ANTHROPIC, "claude-test", "anthropic_api_key")
ON_DEVICE = ProviderConfiguration(Provider.ON_DEVICE, "llama3.2")


def _service(send, secrets=None, **overrides):
    secrets = secrets if secrets is not None else MemorySecretStore({"anthropic_api_key": b"sk-ant"})
    return TranscriptCleanupService(secrets, providers=fake_providers(send, **overrides))


def test_budgets():
    assert ON_DEVICE_BUDGET == 700
    assert CLOUD_BUDGET == 30000


def test_short_transcript_is_rejected_without_request():
    send = FakeSend()

    with pytest.raises(TranscriptTooShort):
        asyncio.run(_service(send).clean("  hello there ", [], ANTHROPIC))
    assert send.calls == []


def test_long_transcript_is_rejected_without_request():
    send = FakeSend()
    transcript = "word " * 600  # 3000 characters, about 750 tokens

    with pytest.raises(TranscriptTooLong) as excinfo:
        asyncio.run(_service(send, token_budget=ON_DEVICE_BUDGET).clean(transcript, [], ON_DEVICE))
    assert excinfo.value.limit == ON_DEVICE_BUDGET * 4
    assert send.calls == []


def test_fifty_words_fit_a_small_budget():
    send = FakeSend()
    transcript = " ".join(["so", "um", "we", "should", "plan"] * 10)

    result = asyncio.run(_service(send, token_budget=200).clean(transcript, [], ANTHROPIC))

    assert result.title == "Weekly Planning Notes"
    assert result.cleaned_transcript
    assert len(result.title.split()) <= 7


def test_missing_api_key():
    send = FakeSend()

    with pytest.raises(ApiKeyMissing) as excinfo:
        asyncio.run(_service(send, secrets=MemorySecretStore()).clean("one two three four", [], ANTHROPIC))
    assert excinfo.value.provider == "anthropic"
    assert "coati key set anthropic" in excinfo.value.recovery_suggestion
    assert send.calls == []


def test_request_carries_key_vocabulary_and_output_allowance():
    send = FakeSend()
    transcript = "um so this is the transcript"

    asyncio.run(_service(send).clean(transcript, ["Coati", "Obsidian"], ANTHROPIC))

    request, model, api_key = send.calls[0]
    assert model == "claude-test"
    assert api_key == "sk-ant"
    assert request.max_output_tokens == 4096
    assert "Common words the speaker uses (preserve these when appropriate): Coati, Obsidian" in request.prompt
    assert transcript in request.prompt
    assert "cleanedTranscript" in request.prompt
    assert "Respond with ONLY valid JSON" in request.system


def test_output_allowance_grows_with_transcript():
    send = FakeSend()
    transcript = "word " * 4000

    asyncio.run(_service(send).clean(transcript, [], ANTHROPIC))

    assert send.calls[0][0].max_output_tokens == len(transcript.strip()) // 4 + 500


def test_structured_provider_skips_json_hint():
    send = FakeSend(json.dumps({"title": "Short Title", "cleanedTranscript": "Text."}))

    result = asyncio.run(_service(send).clean("one two three four", [], ON_DEVICE))

    request = send.calls[0][0]
    assert "cleanedTranscript" not in request.prompt
    assert "Respond with ONLY valid JSON" not in request.system
    assert result.title == "Short Title"


def test_prompt_without_vocabulary():
    prompt = build_prompt("hello there friend", [], json_only=False)
    assert "Common words" not in prompt
    assert prompt.endswith("hello there friend")


def test_parse_fenced_response_with_commentary():
    response = (
        "Sure! Here is the cleaned transcript:\n"
        "```json\n"
        '{"title": "Project Kickoff Summary", "cleanedTranscript": "We kicked off the project."}\n'
        "```\n"
        "Let me know if you need anything else."
    )

    result = parse_cloud_provider_response(response)

    assert result.title == "Project Kickoff Summary"
    assert result.cleaned_transcript == "We kicked off the project."


def test_parse_bare_object_inside_text():
    result = parse_cloud_provider_response("Result: " + GOOD_RESPONSE + " done")
    assert result.title == "Weekly Planning Notes"


def test_parse_truncated_response():
    with pytest.raises(ResponseParsingFailed) as excinfo:
        parse_cloud_provider_response('{"title": "Cut Off", "cleanedTranscript": "We were talking about')
    assert excinfo.value.detail == "Response was truncated"


def test_parse_missing_key():
    with pytest.raises(ResponseParsingFailed, match="Missing key 'cleanedTranscript'"):
        parse_cloud_provider_response('{"title": "Only Title"}')


def test_parse_type_mismatch():
    with pytest.raises(ResponseParsingFailed, match="Type mismatch"):
        parse_cloud_provider_response('{"title": ["a"], "cleanedTranscript": "text"}')


def test_parse_invalid_json_has_snippet():
    with pytest.raises(ResponseParsingFailed) as excinfo:
        parse_cloud_provider_response('{"title": "A" "cleanedTranscript": "b"}')
    assert excinfo.value.snippet


def test_title_is_normalised():
    result = parse_cloud_provider_response('{"title": "  \\"Team   Sync\\nRecap\\"  ", "cleanedTranscript": " Hi. "}')

    assert result.title == "Team Sync Recap"
    assert result.cleaned_transcript == "Hi."


def test_empty_title_is_rejected():
    with pytest.raises(ResponseParsingFailed):
        parse_cloud_provider_response('{"title": "  ", "cleanedTranscript": "Text."}')


def _mock_async_client(monkeypatch, handler):
    original = httpx.AsyncClient

    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return original(*args, **kwargs)

    monkeypatch.setattr(cleanup.httpx, "AsyncClient", factory)


def _request(**kwargs):
    values = dict(system="sys", prompt="prompt", max_output_tokens=4096, timeout=5.0)
    values.update(kwargs)
    return CleanupRequest(**values)


def test_on_device_request(monkeypatch):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": GOOD_RESPONSE}})

    _mock_async_client(monkeypatch, handler)

    content = asyncio.run(cleanup._send_on_device(_request(base_url="http://localhost:11434"), "llama3.2", None))

    assert content == GOOD_RESPONSE
    assert seen["url"] == "http://localhost:11434/api/chat"
    assert seen["body"]["model"] == "llama3.2"
    assert seen["body"]["stream"] is False
    assert "cleanedTranscript" in seen["body"]["format"]["properties"]


def test_on_device_server_down(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    _mock_async_client(monkeypatch, handler)

    with pytest.raises(ProviderUnavailable):
        asyncio.run(cleanup._send_on_device(_request(), "llama3.2", None))


def test_on_device_model_missing(monkeypatch):
    _mock_async_client(monkeypatch, lambda request: httpx.Response(404, json={"error": "model not found"}))

    with pytest.raises(ProviderUnavailable, match="not installed"):
        asyncio.run(cleanup._send_on_device(_request(), "llama9", None))


def test_gemini_request(monkeypatch):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-goog-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": GOOD_RESPONSE}]}}]},
        )

    _mock_async_client(monkeypatch, handler)

    content = asyncio.run(cleanup._send_gemini(_request(max_output_tokens=5000), "gemini-2.0-flash", "g-key"))

    assert content == GOOD_RESPONSE
    assert seen["url"].endswith("/models/gemini-2.0-flash:generateContent")
    assert seen["key"] == "g-key"
    assert seen["body"]["generationConfig"]["maxOutputTokens"] == 5000
    assert seen["body"]["systemInstruction"]["parts"][0]["text"] == "sys"


def test_gemini_api_error(monkeypatch):
    _mock_async_client(
        monkeypatch,
        lambda request: httpx.Response(400, json={"error": {"message": "API key not valid"}}),
    )

    with pytest.raises(RequestFailed, match="API key not valid"):
        asyncio.run(cleanup._send_gemini(_request(), "gemini-2.0-flash", "bad"))


class FakeSdkClient:
    """Stands in for an SDK client; ``create`` returns or raises ``outcome``."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.kwargs = {}
        self.closed = False
        self.messages = SimpleNamespace(create=self._create)
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.kwargs = kwargs
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    async def close(self):
        self.closed = True


def _install_client(monkeypatch, module, name, outcome):
    client = FakeSdkClient(outcome)
    monkeypatch.setattr(module, name, lambda **kwargs: client)
    return client


def _response(status, url):
    return httpx.Response(status, json={"error": {"message": "nope"}}, request=httpx.Request("POST", url))


ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
OPENAI_URL = "https://api.openai.com/v1/chat/completions"


def test_anthropic_request(monkeypatch):
    message = SimpleNamespace(stop_reason="end_turn", content=[SimpleNamespace(type="text", text=GOOD_RESPONSE)])
    client = _install_client(monkeypatch, cleanup.anthropic, "AsyncAnthropic", message)

    content = asyncio.run(cleanup._send_anthropic(_request(max_output_tokens=6000), "claude-test", "sk-ant"))

    assert content == GOOD_RESPONSE
    assert client.kwargs["model"] == "claude-test"
    assert client.kwargs["max_tokens"] == 6000
    assert client.kwargs["system"] == "sys"
    assert client.closed


@pytest.mark.parametrize(
    "error, match",
    [
        (anthropic.APIConnectionError(request=httpx.Request("POST", ANTHROPIC_URL)), "Network error"),
        (anthropic.RateLimitError("slow down", response=_response(429, ANTHROPIC_URL), body=None), "Rate limit"),
        (anthropic.APIStatusError("bad key", response=_response(401, ANTHROPIC_URL), body=None), r"API error \(401\)"),
    ],
)
def test_anthropic_errors_become_request_failed(monkeypatch, error, match):
    client = _install_client(monkeypatch, cleanup.anthropic, "AsyncAnthropic", error)

    with pytest.raises(RequestFailed, match=match):
        asyncio.run(cleanup._send_anthropic(_request(), "claude-test", "sk-ant"))
    assert client.closed


def test_openai_request(monkeypatch):
    completion = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=GOOD_RESPONSE))])
    client = _install_client(monkeypatch, cleanup.openai, "AsyncOpenAI", completion)

    content = asyncio.run(cleanup._send_openai(_request(), "gpt-4o", "sk-openai"))

    assert content == GOOD_RESPONSE
    assert client.kwargs["response_format"] == {"type": "json_object"}
    assert client.kwargs["max_completion_tokens"] == 4096
    assert client.kwargs["messages"][0] == {"role": "system", "content": "sys"}
    assert client.closed


@pytest.mark.parametrize(
    "error, match",
    [
        (openai.APIConnectionError(request=httpx.Request("POST", OPENAI_URL)), "Network error"),
        (openai.RateLimitError("slow down", response=_response(429, OPENAI_URL), body=None), "Rate limit"),
        (openai.APIStatusError("server error", response=_response(500, OPENAI_URL), body=None), r"API error \(500\)"),
    ],
)
def test_openai_errors_become_request_failed(monkeypatch, error, match):
    client = _install_client(monkeypatch, cleanup.openai, "AsyncOpenAI", error)

    with pytest.raises(RequestFailed, match=match):
        asyncio.run(cleanup._send_openai(_request(), "gpt-4o", "sk-openai"))
    assert client.closed


def test_openai_empty_choices(monkeypatch):
    _install_client(monkeypatch, cleanup.openai, "AsyncOpenAI", SimpleNamespace(choices=[]))

    with pytest.raises(ResponseParsingFailed, match="Empty response"):
        asyncio.run(cleanup._send_openai(_request(), "gpt-4o", "sk-openai"))
