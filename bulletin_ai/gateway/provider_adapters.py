"""Provider Adapters — declarative wire format for each AI vendor.

An adapter never performs I/O. It builds the HTTP request for a model id,
extracts text and token counts from a successful payload, and maps error
payloads onto ErrorClassification. The RequestExecutor does the sending.

Vendor-specific behaviors:
  - OpenAI / Mistral: standard chat completions, model id prefix stripped
  - OpenRouter: chat completions with attribution headers and a model id map
  - Google: generateContent, key passed as a query parameter
  - Anthropic: Messages API, block-based content
  - Ollama: local /api/generate, no key, longer timeout
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from bulletin_ai.gateway.errors import ProviderResponseError
from bulletin_ai.gateway.types import (
    ErrorClassification,
    ParsedResponse,
    ProviderId,
    RequestDescriptor,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 25_000
OLLAMA_TIMEOUT_MS = 120_000

_QUOTA_MARKERS = ("quota", "rate limit", "rate_limit", "too many requests", "resource_exhausted")
_NOT_FOUND_MARKERS = ("not found", "not_found", "does not exist", "no endpoints found")


def _error_detail(raw: Any) -> str:
    """Best-effort human message from an error payload."""
    if raw is None:
        return ""
    if isinstance(raw, str):
        return raw
    if isinstance(raw, dict):
        error = raw.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        for key in ("message", "detail"):
            if raw.get(key):
                return str(raw[key])
    return json.dumps(raw, ensure_ascii=False)


def _error_codes(raw: Any) -> set[str]:
    """Machine-readable error identifiers (code, type, status, details reasons)."""
    codes: set[str] = set()
    if not isinstance(raw, dict):
        return codes
    error = raw.get("error")
    if isinstance(error, dict):
        for key in ("code", "type", "status"):
            value = error.get(key)
            if isinstance(value, str):
                codes.add(value)
        details = error.get("details")
        for detail in details if isinstance(details, list) else []:
            if isinstance(detail, dict) and isinstance(detail.get("reason"), str):
                codes.add(detail["reason"])
    if isinstance(raw.get("type"), str):
        codes.add(raw["type"])
    return codes


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _text_chunks(chunks: list, *, untyped_is_text: bool = True) -> str:
    """Join the text of typed content chunks, skipping thinking and tool chunks."""
    default_type = "text" if untyped_is_text else None
    return "".join(
        c["text"]
        for c in chunks
        if isinstance(c, dict) and c.get("type", default_type) == "text" and isinstance(c.get("text"), str)
    )


class ProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider_id: str
    default_base_url: str = ""
    default_timeout_ms: int = DEFAULT_TIMEOUT_MS

    # Vendor error codes that map to a classification regardless of HTTP status
    auth_codes: frozenset[str] = frozenset()
    quota_codes: frozenset[str] = frozenset()
    not_found_codes: frozenset[str] = frozenset()

    def __init__(self, api_key: str = "", base_url: str | None = None, timeout_ms: int | None = None, **kwargs):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.timeout_ms = timeout_ms or self.default_timeout_ms

    def vendor_model(self, model_id: str) -> str:
        """Model id as the vendor expects it on the wire."""
        return model_id

    @abstractmethod
    def build_request(self, model_id: str, prompt: str) -> RequestDescriptor:
        ...

    @abstractmethod
    def parse_response(self, raw: dict) -> ParsedResponse:
        ...

    def classify_error(self, status_code: int, raw: Any) -> ErrorClassification:
        codes = _error_codes(raw)
        if codes & self.auth_codes or status_code in (401, 403):
            return ErrorClassification.AUTH
        if codes & self.quota_codes or status_code == 429:
            return ErrorClassification.QUOTA
        if codes & self.not_found_codes or status_code == 404:
            return ErrorClassification.NOT_FOUND

        detail = _error_detail(raw).lower()
        if any(marker in detail for marker in _QUOTA_MARKERS):
            return ErrorClassification.QUOTA
        if any(marker in detail for marker in _NOT_FOUND_MARKERS):
            return ErrorClassification.NOT_FOUND
        return ErrorClassification.UNKNOWN

    def error_message(self, status_code: int, raw: Any) -> str:
        return f"API error {status_code}: {_error_detail(raw)}"

    def _require_dict(self, raw: Any, where: str = "response") -> dict:
        if not isinstance(raw, dict):
            raise ProviderResponseError(
                f"Unexpected {self.provider_id} {where}: {type(raw).__name__}",
                provider_id=self.provider_id,
            )
        return raw


# ---------------------------------------------------------------------------
# Chat Completions (OpenAI-compatible)
# ---------------------------------------------------------------------------


class ChatCompletionsAdapter(ProviderAdapter):
    """Shared wire format of OpenAI, Mistral and OpenRouter."""

    max_tokens: int | None = None
    auth_codes = frozenset({"invalid_api_key"})
    quota_codes = frozenset({"insufficient_quota", "rate_limit_exceeded"})
    not_found_codes = frozenset({"model_not_found"})

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_request(self, model_id: str, prompt: str) -> RequestDescriptor:
        body: dict[str, Any] = {
            "model": self.vendor_model(model_id),
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.max_tokens:
            body["max_tokens"] = self.max_tokens
        return RequestDescriptor(
            method="POST",
            url=f"{self.base_url}/chat/completions",
            headers=self.headers(),
            body=body,
        )

    def parse_response(self, raw: dict) -> ParsedResponse:
        data = self._require_dict(raw)
        choices = data.get("choices") or []
        if not isinstance(choices, list):
            raise ProviderResponseError("choices is not a list", provider_id=self.provider_id)
        text = ""
        if choices:
            choice = self._require_dict(choices[0], "choice")
            message = self._require_dict(choice.get("message") or {}, "message")
            text = self._message_text(message.get("content"))
        usage = _as_dict(data.get("usage"))
        return ParsedResponse(
            text=text,
            prompt_tokens=_as_int(usage.get("prompt_tokens")),
            completion_tokens=_as_int(usage.get("completion_tokens")),
        )

    def _message_text(self, content: Any) -> str:
        # Mistral reasoning models send a list of thinking/text chunks
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            return _text_chunks(content)
        raise ProviderResponseError(
            f"Unexpected {self.provider_id} message content: {type(content).__name__}",
            provider_id=self.provider_id,
        )


class OpenAIAdapter(ChatCompletionsAdapter):
    provider_id = ProviderId.OPENAI.value
    default_base_url = "https://api.openai.com/v1"

    def vendor_model(self, model_id: str) -> str:
        return model_id.removeprefix("openai-")


class MistralAdapter(ChatCompletionsAdapter):
    """Mistral La Plateforme. "mistral-direct-small-latest" -> "mistral-small-latest"."""

    provider_id = ProviderId.MISTRAL.value
    default_base_url = "https://api.mistral.ai/v1"
    max_tokens = 512

    def vendor_model(self, model_id: str) -> str:
        return model_id.replace("mistral-direct-", "mistral-", 1)


# Application model id -> OpenRouter model slug
OPENROUTER_MODEL_MAP = {
    "openrouter": "deepseek/deepseek-chat",
    "devstral-free": "mistralai/devstral-2512:free",
    "llama-3.3-70b-free": "meta-llama/llama-3.3-70b-instruct:free",
    "claude-sonnet-4.5": "anthropic/claude-sonnet-4.5",
    "ministral-3b": "mistralai/ministral-3b-2512",
    "amazon-nova-v1-lite": "amazon/nova-lite-v1:1.0",
    "mistral-small": "mistralai/mistral-small-3.2-24b-instruct",
    "mistral-large": "mistralai/mistral-large-2512",
}
OPENROUTER_DEFAULT_MODEL = "deepseek/deepseek-chat"


class OpenRouterAdapter(ChatCompletionsAdapter):
    """OpenRouter. 402 means the account is out of credits."""

    provider_id = ProviderId.OPENROUTER.value
    default_base_url = "https://openrouter.ai/api/v1"
    max_tokens = 512

    def __init__(
        self,
        api_key: str = "",
        base_url: str | None = None,
        timeout_ms: int | None = None,
        referer: str = "http://localhost",
        title: str = "Bulletin Assistant",
        **kwargs,
    ):
        super().__init__(api_key, base_url, timeout_ms, **kwargs)
        self.referer = referer
        self.title = title

    def vendor_model(self, model_id: str) -> str:
        return OPENROUTER_MODEL_MAP.get(model_id, OPENROUTER_DEFAULT_MODEL)

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["HTTP-Referer"] = self.referer
        headers["X-Title"] = self.title
        return headers

    def classify_error(self, status_code: int, raw: Any) -> ErrorClassification:
        if status_code == 402:
            return ErrorClassification.QUOTA
        return super().classify_error(status_code, raw)


# ---------------------------------------------------------------------------
# Google Gemini
# ---------------------------------------------------------------------------


class GoogleAdapter(ProviderAdapter):
    """Google AI generateContent.

    An invalid key comes back as 400 with reason API_KEY_INVALID, so status
    alone is not enough to detect auth failures.
    """

    provider_id = ProviderId.GOOGLE.value
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"
    auth_codes = frozenset({"API_KEY_INVALID", "PERMISSION_DENIED", "UNAUTHENTICATED"})
    quota_codes = frozenset({"RESOURCE_EXHAUSTED", "RATE_LIMIT_EXCEEDED"})
    not_found_codes = frozenset({"NOT_FOUND"})

    def build_request(self, model_id: str, prompt: str) -> RequestDescriptor:
        return RequestDescriptor(
            method="POST",
            url=f"{self.base_url}/models/{model_id}:generateContent",
            headers={"Content-Type": "application/json"},
            body={"contents": [{"role": "user", "parts": [{"text": prompt}]}]},
            params={"key": self.api_key},
        )

    def parse_response(self, raw: dict) -> ParsedResponse:
        data = self._require_dict(raw)
        text = ""
        candidates = data.get("candidates") or []
        if not isinstance(candidates, list):
            raise ProviderResponseError("candidates is not a list", provider_id=self.provider_id)
        if candidates:
            candidate = self._require_dict(candidates[0], "candidate")
            content = self._require_dict(candidate.get("content") or {}, "content")
            parts = content.get("parts") or []
            if not isinstance(parts, list):
                raise ProviderResponseError("content parts is not a list", provider_id=self.provider_id)
            # Thinking models return their reasoning as parts flagged "thought"
            text = "".join(
                p["text"]
                for p in parts
                if isinstance(p, dict) and isinstance(p.get("text"), str) and not p.get("thought")
            )
        else:
            feedback = _as_dict(data.get("promptFeedback"))
            if feedback.get("blockReason"):
                logger.warning("Gemini blocked the prompt: %s", feedback["blockReason"])
        usage = _as_dict(data.get("usageMetadata"))
        return ParsedResponse(
            text=text,
            prompt_tokens=_as_int(usage.get("promptTokenCount")),
            completion_tokens=_as_int(usage.get("candidatesTokenCount")),
        )


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicAdapter(ProviderAdapter):
    """Anthropic Messages API.

    The reply is a list of typed content blocks; only "text" blocks carry
    the generated text.
    """

    provider_id = ProviderId.ANTHROPIC.value
    default_base_url = "https://api.anthropic.com/v1"
    api_version = "2023-06-01"
    max_tokens = 1024
    auth_codes = frozenset({"authentication_error", "permission_error"})
    quota_codes = frozenset({"rate_limit_error"})
    not_found_codes = frozenset({"not_found_error"})

    def vendor_model(self, model_id: str) -> str:
        return model_id.removeprefix("anthropic-")

    def build_request(self, model_id: str, prompt: str) -> RequestDescriptor:
        return RequestDescriptor(
            method="POST",
            url=f"{self.base_url}/messages",
            headers={
                "Content-Type": "application/json",
                "x-api-key": self.api_key,
                "anthropic-version": self.api_version,
            },
            body={
                "model": self.vendor_model(model_id),
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": self.max_tokens,
            },
        )

    def parse_response(self, raw: dict) -> ParsedResponse:
        data = self._require_dict(raw)
        blocks = data.get("content") or []
        if not isinstance(blocks, list):
            raise ProviderResponseError("Anthropic content is not a list of blocks", provider_id=self.provider_id)
        text = _text_chunks(blocks, untyped_is_text=False)
        usage = _as_dict(data.get("usage"))
        return ParsedResponse(
            text=text,
            prompt_tokens=_as_int(usage.get("input_tokens")),
            completion_tokens=_as_int(usage.get("output_tokens")),
        )


# ---------------------------------------------------------------------------
# Ollama (local)
# ---------------------------------------------------------------------------


class OllamaAdapter(ProviderAdapter):
    """Local Ollama server. Slow first loads need the longer timeout."""

    provider_id = ProviderId.OLLAMA.value
    default_base_url = "http://localhost:11434"
    default_timeout_ms = OLLAMA_TIMEOUT_MS

    generation_options = {
        "temperature": 0.7,
        "num_predict": 512,
        "top_p": 0.9,
        "repeat_penalty": 1.1,
    }

    def vendor_model(self, model_id: str) -> str:
        return model_id.removeprefix("ollama-")

    def build_request(self, model_id: str, prompt: str) -> RequestDescriptor:
        return RequestDescriptor(
            method="POST",
            url=f"{self.base_url}/api/generate",
            headers={"Content-Type": "application/json"},
            body={
                "model": self.vendor_model(model_id),
                "prompt": prompt,
                "stream": False,
                "options": dict(self.generation_options),
            },
        )

    def parse_response(self, raw: dict) -> ParsedResponse:
        data = self._require_dict(raw)
        text = data.get("response") or ""
        if not isinstance(text, str):
            raise ProviderResponseError("Ollama response is not text", provider_id=self.provider_id)
        return ParsedResponse(
            text=text,
            prompt_tokens=_as_int(data.get("prompt_eval_count")),
            completion_tokens=_as_int(data.get("eval_count")),
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[str, type[ProviderAdapter]] = {
    ProviderId.OPENAI.value: OpenAIAdapter,
    ProviderId.MISTRAL.value: MistralAdapter,
    ProviderId.OPENROUTER.value: OpenRouterAdapter,
    ProviderId.GOOGLE.value: GoogleAdapter,
    ProviderId.ANTHROPIC.value: AnthropicAdapter,
    ProviderId.OLLAMA.value: OllamaAdapter,
}


def get_adapter(provider_id: str, api_key: str = "", **kwargs) -> ProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    cls = ADAPTER_REGISTRY.get(provider_id)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider_id}")
    return cls(api_key=api_key, **kwargs)


def adapters_from_settings(settings) -> dict[str, ProviderAdapter]:
    """One configured adapter per provider, keys and endpoints taken from settings."""
    keys = settings.provider_api_keys
    bases = settings.provider_api_bases
    adapters: dict[str, ProviderAdapter] = {}
    for provider_id in ADAPTER_REGISTRY:
        kwargs: dict[str, Any] = {"base_url": bases.get(provider_id)}
        if provider_id == ProviderId.OLLAMA.value:
            kwargs["timeout_ms"] = settings.api_call_timeout_ollama_ms
        else:
            kwargs["timeout_ms"] = settings.api_call_timeout_ms
        if provider_id == ProviderId.OPENROUTER.value:
            kwargs["referer"] = settings.openrouter_referer
            kwargs["title"] = settings.openrouter_title
        adapters[provider_id] = get_adapter(provider_id, keys.get(provider_id, ""), **kwargs)
    return adapters
