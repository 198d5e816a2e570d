"""Transcript cleanup and titling through a language model."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Sequence, Tuple

import anthropic
import httpx
import openai
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import credential_key
from .errors import (
    ApiKeyMissing,
    ProviderUnavailable,
    RequestFailed,
    ResponseParsingFailed,
    TranscriptTooLong,
    TranscriptTooShort,
)
from .keystore import SecretStore, SecretStoreError, get_text
from .models import Provider, ProviderConfiguration

logger = logging.getLogger(__name__)

MIN_WORD_COUNT = 3
CHARS_PER_TOKEN = 4
MIN_OUTPUT_TOKENS = 4096
OUTPUT_OVERHEAD_TOKENS = 500

# On-device models have a small context window shared by instructions and output.
ON_DEVICE_CONTEXT_TOKENS = 1700
ON_DEVICE_INSTRUCTION_TOKENS = 200
ON_DEVICE_OUTPUT_RESERVE = 800
ON_DEVICE_BUDGET = ON_DEVICE_CONTEXT_TOKENS - ON_DEVICE_INSTRUCTION_TOKENS - ON_DEVICE_OUTPUT_RESERVE
CLOUD_BUDGET = 30000

DEFAULT_ON_DEVICE_URL = "http://localhost:11434"
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

SYSTEM_INSTRUCTIONS = """\
You are a transcript editor. Your task is to clean voice transcripts by:
- Removing filler words (um, uh, like, you know, so, basically)
- Fixing grammar and punctuation errors
- Improving readability while preserving the original meaning
- NOT adding content that wasn't in the original

Generate a concise title (5-7 words) that captures the main topic.
Do NOT use special characters in titles: : / \\ ? * " < > | [ ] # ^"""

JSON_ONLY_INSTRUCTION = "IMPORTANT: Respond with ONLY valid JSON. No markdown code blocks, no explanation."

JSON_FORMAT_HINT = (
    "Respond with ONLY a JSON object in this exact format (no markdown, no explanation):\n"
    '{"title": "Your Title Here", "cleanedTranscript": "Your cleaned transcript here"}'
)

_WHITESPACE_RE = re.compile(r"\s+")
_QUOTES = "\"'“”‘’`"


class CleanupResult(BaseModel):
    """Title and cleaned text returned by the model."""

    model_config = ConfigDict(populate_by_name=True)

    title: str
    cleaned_transcript: str = Field(alias="cleanedTranscript")

    @field_validator("title")
    @classmethod
    def _normalise_title(cls, value: str) -> str:
        title = _WHITESPACE_RE.sub(" ", value).strip().strip(_QUOTES).strip()
        if not title:
            raise ValueError("title is empty")
        return title

    @field_validator("cleaned_transcript")
    @classmethod
    def _strip_transcript(cls, value: str) -> str:
        return value.strip()


@dataclass(slots=True)
class CleanupRequest:
    system: str
    prompt: str
    max_output_tokens: int
    timeout: float
    base_url: Optional[str] = None


SendFn = Callable[[CleanupRequest, str, Optional[str]], Awaitable[str]]


@dataclass(frozen=True)
class ProviderSpec:
    """How to reach one language model backend."""

    provider: Provider
    display_name: str
    default_model: str
    models: Tuple[str, ...]
    token_budget: int
    requires_api_key: bool
    structured_output: bool
    send: SendFn


def word_count(text: str) -> int:
    return len(text.split())


def estimate_tokens(text: str) -> int:
    """Rough token count, about four characters per token for English."""
    return len(text) // CHARS_PER_TOKEN


def build_prompt(transcript: str, custom_vocabulary: Sequence[str], json_only: bool) -> str:
    lines = ["Clean this voice transcript and generate a title."]
    if custom_vocabulary:
        lines.append(
            "Common words the speaker uses (preserve these when appropriate): " + ", ".join(custom_vocabulary)
        )
    lines.extend(["", "TRANSCRIPT:", transcript])
    if json_only:
        lines.extend(["", JSON_FORMAT_HINT])
    return "\n".join(lines)


def parse_cloud_provider_response(response: str) -> CleanupResult:
    """Extract the JSON object from free text model output."""

    logger.debug("Parsing response (%d chars): %s", len(response), response[:200])
    text = response.strip()

    for fence in ("```json", "```"):
        start = text.find(fence)
        if start != -1:
            text = text[start + len(fence):]
            end = text.find("```")
            if end != -1:
                text = text[:end]
            break

    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        text = text[first:last + 1]
    text = text.strip()

    if not text.endswith("}"):
        logger.error("Response appears truncated, ends with: %s", text[-100:])
        raise ResponseParsingFailed("Response was truncated", snippet=text[-100:])

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        snippet = text[max(0, exc.pos - 50):exc.pos + 50]
        logger.error("Invalid JSON near position %d: ...%s...", exc.pos, snippet)
        raise ResponseParsingFailed(f"Invalid JSON: {exc.msg}", snippet=snippet) from exc

    return _validate(payload, text)


def parse_structured_response(content: str) -> CleanupResult:
    """Validate output produced under a JSON schema constraint."""

    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        snippet = content[max(0, exc.pos - 50):exc.pos + 50]
        raise ResponseParsingFailed(f"Invalid JSON: {exc.msg}", snippet=snippet) from exc
    return _validate(payload, content)


def _validate(payload: Any, text: str) -> CleanupResult:
    if not isinstance(payload, dict):
        raise ResponseParsingFailed("Expected a JSON object", snippet=text[:200])
    try:
        return CleanupResult.model_validate(payload)
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or "response"
        kind = error.get("type", "")
        if kind == "missing":
            detail = f"Missing key '{field}'"
        elif kind.endswith("_type"):
            detail = f"Type mismatch for '{field}': {error.get('msg')}"
        else:
            detail = f"Invalid value for '{field}': {error.get('msg')}"
        logger.error("%s in response: %s", detail, text[:500])
        raise ResponseParsingFailed(detail, snippet=text[:200]) from exc


def _describe_status(exc: httpx.HTTPStatusError) -> str:
    response = exc.response
    detail = response.text[:200]
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = str(error.get("message", detail))
        elif isinstance(error, str):
            detail = error
    return f"API error ({response.status_code}): {detail}"


async def _send_on_device(request: CleanupRequest, model: str, api_key: Optional[str]) -> str:
    base_url = (request.base_url or DEFAULT_ON_DEVICE_URL).rstrip("/")
    payload = {
        "model": model,
        "stream": False,
        "format": CleanupResult.model_json_schema(by_alias=True),
        "options": {"num_ctx": ON_DEVICE_CONTEXT_TOKENS, "num_predict": ON_DEVICE_OUTPUT_RESERVE},
        "messages": [
            {"role": "system", "content": request.system},
            {"role": "user", "content": request.prompt},
        ],
    }
    try:
        async with httpx.AsyncClient(base_url=base_url, timeout=request.timeout) as client:
            response = await client.post("/api/chat", json=payload)
            response.raise_for_status()
    except httpx.ConnectError as exc:
        raise ProviderUnavailable(f"no on-device model server at {base_url}") from exc
    except httpx.HTTPStatusError as exc:
        if exc.response.status_code == 404:
            raise ProviderUnavailable(f"model {model!r} is not installed on the on-device server") from exc
        raise RequestFailed(_describe_status(exc)) from exc
    except httpx.HTTPError as exc:
        raise RequestFailed(str(exc) or exc.__class__.__name__) from exc

    try:
        return response.json()["message"]["content"]
    except (ValueError, KeyError, TypeError) as exc:
        raise ResponseParsingFailed("Unexpected on-device server response", snippet=response.text[:200]) from exc


async def _send_anthropic(request: CleanupRequest, model: str, api_key: Optional[str]) -> str:
    client = anthropic.AsyncAnthropic(api_key=api_key, timeout=request.timeout)
    try:
        message = await client.messages.create(
            model=model,
            max_tokens=request.max_output_tokens,
            system=request.system,
            messages=[{"role": "user", "content": request.prompt}],
        )
    except anthropic.APIConnectionError as exc:
        raise RequestFailed(f"Network error: {exc}") from exc
    except anthropic.RateLimitError as exc:
        raise RequestFailed(f"Rate limit exceeded: {exc}") from exc
    except anthropic.APIStatusError as exc:
        raise RequestFailed(f"API error ({exc.status_code}): {exc.message}") from exc
    finally:
        await client.close()

    if message.stop_reason == "max_tokens":
        logger.warning("Anthropic response hit the output token limit")
    return "".join(block.text for block in message.content if block.type == "text")


async def _send_openai(request: CleanupRequest, model: str, api_key: Optional[str]) -> str:
    client = openai.AsyncOpenAI(api_key=api_key, timeout=request.timeout)
    try:
        completion = await client.chat.completions.create(
            model=model,
            max_completion_tokens=request.max_output_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": request.system},
                {"role": "user", "content": request.prompt},
            ],
        )
    except openai.APIConnectionError as exc:
        raise RequestFailed(f"Network error: {exc}") from exc
    except openai.RateLimitError as exc:
        raise RequestFailed(f"Rate limit exceeded: {exc}") from exc
    except openai.APIStatusError as exc:
        raise RequestFailed(f"API error ({exc.status_code}): {exc.message}") from exc
    finally:
        await client.close()

    if not completion.choices:
        raise ResponseParsingFailed("Empty response")
    return completion.choices[0].message.content or ""


async def _send_gemini(request: CleanupRequest, model: str, api_key: Optional[str]) -> str:
    payload = {
        "systemInstruction": {"parts": [{"text": request.system}]},
        "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
        "generationConfig": {
            "maxOutputTokens": request.max_output_tokens,
            "responseMimeType": "application/json",
        },
    }
    headers = {"x-goog-api-key": api_key or ""}
    try:
        async with httpx.AsyncClient(base_url=request.base_url or GEMINI_BASE_URL, timeout=request.timeout) as client:
            response = await client.post(f"/models/{model}:generateContent", json=payload, headers=headers)
            response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise RequestFailed(_describe_status(exc)) from exc
    except httpx.HTTPError as exc:
        raise RequestFailed(f"Network error: {exc}") from exc

    try:
        parts = response.json()["candidates"][0]["content"]["parts"]
        return "".join(part.get("text", "") for part in parts)
    except (ValueError, KeyError, IndexError, TypeError) as exc:
        raise ResponseParsingFailed("Unexpected Gemini response", snippet=response.text[:200]) from exc


PROVIDERS: Dict[Provider, ProviderSpec] = {
    Provider.ON_DEVICE: ProviderSpec(
        provider=Provider.ON_DEVICE,
        display_name="On-device (Ollama)",
        default_model="llama3.2",
        models=("llama3.2", "llama3.2:1b", "qwen2.5:3b"),
        token_budget=ON_DEVICE_BUDGET,
        requires_api_key=False,
        structured_output=True,
        send=_send_on_device,
    ),
    Provider.ANTHROPIC: ProviderSpec(
        provider=Provider.ANTHROPIC,
        display_name="Claude (Anthropic)",
        default_model="claude-sonnet-4-5-20250929",
        models=("claude-sonnet-4-5-20250929", "claude-haiku-4-5-20251001"),
        token_budget=CLOUD_BUDGET,
        requires_api_key=True,
        structured_output=False,
        send=_send_anthropic,
    ),
    Provider.OPENAI: ProviderSpec(
        provider=Provider.OPENAI,
        display_name="OpenAI",
        default_model="gpt-4o",
        models=("gpt-4o", "gpt-4o-mini", "gpt-4-turbo"),
        token_budget=CLOUD_BUDGET,
        requires_api_key=True,
        structured_output=False,
        send=_send_openai,
    ),
    Provider.GEMINI: ProviderSpec(
        provider=Provider.GEMINI,
        display_name="Gemini (Google)",
        default_model="gemini-2.0-flash",
        models=("gemini-2.0-flash", "gemini-1.5-pro", "gemini-1.5-flash"),
        token_budget=CLOUD_BUDGET,
        requires_api_key=True,
        structured_output=False,
        send=_send_gemini,
    ),
}


class TranscriptCleanupService:
    """Cleans a raw transcript and proposes a title for it.

    Validation happens before any request is made: transcripts under three
    words or over the provider's token budget are rejected outright.
    """

    def __init__(
        self,
        secrets: SecretStore,
        providers: Mapping[Provider, ProviderSpec] = PROVIDERS,
        request_timeout: float = 60.0,
        on_device_url: str = DEFAULT_ON_DEVICE_URL,
    ) -> None:
        self._secrets = secrets
        self._providers = providers
        self.request_timeout = request_timeout
        self.on_device_url = on_device_url

    def spec_for(self, provider: Provider) -> ProviderSpec:
        try:
            return self._providers[provider]
        except KeyError as exc:
            raise ProviderUnavailable(f"no backend registered for {provider.value}") from exc

    async def clean(
        self,
        raw_transcript: str,
        custom_vocabulary: Sequence[str],
        provider_config: ProviderConfiguration,
    ) -> CleanupResult:
        spec = self.spec_for(provider_config.provider)
        text = raw_transcript.strip()

        if word_count(text) < MIN_WORD_COUNT:
            raise TranscriptTooShort()
        tokens = estimate_tokens(text)
        if tokens > spec.token_budget:
            raise TranscriptTooLong(limit=spec.token_budget * CHARS_PER_TOKEN)

        api_key = self._api_key(spec, provider_config)

        system = SYSTEM_INSTRUCTIONS
        if not spec.structured_output:
            system = f"{SYSTEM_INSTRUCTIONS}\n\n{JSON_ONLY_INSTRUCTION}"
        request = CleanupRequest(
            system=system,
            prompt=build_prompt(text, custom_vocabulary, json_only=not spec.structured_output),
            max_output_tokens=max(MIN_OUTPUT_TOKENS, tokens + OUTPUT_OVERHEAD_TOKENS),
            timeout=self.request_timeout,
            base_url=self.on_device_url if provider_config.provider is Provider.ON_DEVICE else None,
        )

        logger.info(
            "Cleaning transcript (~%d tokens) with %s / %s",
            tokens,
            spec.display_name,
            provider_config.model,
        )
        raw = await spec.send(request, provider_config.model, api_key)
        if spec.structured_output:
            result = parse_structured_response(raw)
        else:
            result = parse_cloud_provider_response(raw)
        logger.debug("Cleanup produced title %r", result.title)
        return result

    def _api_key(self, spec: ProviderSpec, provider_config: ProviderConfiguration) -> Optional[str]:
        if not spec.requires_api_key:
            return None
        key_name = provider_config.credential_key or credential_key(spec.provider)
        try:
            api_key = get_text(self._secrets, key_name)
        except SecretStoreError as exc:
            logger.error("Could not read %s: %s", key_name, exc)
            api_key = None
        if not api_key:
            raise ApiKeyMissing(spec.provider.value)
        return api_key
