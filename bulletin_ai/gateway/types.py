"""Core types and DTOs for the AI call scheduling layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderId(str, Enum):
    """Supported AI text-generation providers."""

    GOOGLE = "google"
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    ANTHROPIC = "anthropic"
    MISTRAL = "mistral"
    OLLAMA = "ollama"


class ErrorClassification(str, Enum):
    """Closed set of failure kinds a provider call can end with."""

    AUTH = "auth"
    QUOTA = "quota"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    EMPTY_RESPONSE = "empty_response"
    UNKNOWN = "unknown"

    @property
    def is_retryable(self) -> bool:
        """Whether the orchestrator may move on to the next candidate."""
        return self not in (ErrorClassification.AUTH, ErrorClassification.CANCELLED)


# ---------------------------------------------------------------------------
# Catalog entries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelRateLimit:
    """Configured pacing for one model."""

    base_delay_ms: int
    requests_per_minute: int


@dataclass(frozen=True)
class ModelPricing:
    """USD cost per 1M tokens."""

    input: float
    output: float


# ---------------------------------------------------------------------------
# Candidate & credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candidate:
    """One (model, provider) pair the orchestrator may dispatch to."""

    model_id: str
    provider_id: str
    has_credential: bool = True


@dataclass
class ProviderCredentials:
    """Which providers the caller can reach.

    API keys are indexed by provider id. Ollama needs no key: it is usable
    when enabled, and a model is reachable when it is installed locally
    (an empty installed list means "unknown", so every model is allowed).
    """

    api_keys: dict[str, str] = field(default_factory=dict)
    ollama_enabled: bool = False
    ollama_installed_models: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings) -> ProviderCredentials:
        return cls(
            api_keys={k: v for k, v in settings.provider_api_keys.items() if v},
            ollama_enabled=settings.ollama_enabled,
            ollama_installed_models=settings.ollama_models,
        )

    def api_key(self, provider_id: str) -> str:
        return self.api_keys.get(provider_id, "")

    def has_credential(self, model_id: str, provider_id: str) -> bool:
        if provider_id == ProviderId.OLLAMA.value:
            return self.ollama_enabled and self._ollama_model_installed(model_id)
        return bool(self.api_keys.get(provider_id, "").strip())

    def _ollama_model_installed(self, model_id: str) -> bool:
        if not self.ollama_installed_models:
            return True
        name = model_id.removeprefix("ollama-")
        base, _, tag = name.partition(":")
        for installed in self.ollama_installed_models:
            if installed.startswith(name):
                return True
            # "qwen3:4b" also matches an installed "qwen3:4b-q4_0"
            installed_base, _, installed_tag = installed.partition(":")
            if installed_base == base and installed_tag and installed_tag.startswith(tag):
                return True
        return False


# ---------------------------------------------------------------------------
# Rate state
# ---------------------------------------------------------------------------


@dataclass
class RateState:
    """Adaptive pacing state of one model id.

    Invariant: base_delay_ms <= current_delay_ms <= multiplier * base_delay_ms.
    """

    base_delay_ms: int
    current_delay_ms: int
    last_request_at: float | None = None  # time.monotonic()
    success_streak: int = 0

    @property
    def is_adapted(self) -> bool:
        return self.current_delay_ms != self.base_delay_ms


# ---------------------------------------------------------------------------
# Wire-level DTOs
# ---------------------------------------------------------------------------


@dataclass
class RequestDescriptor:
    """Everything needed to issue one HTTP request to a provider."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] | None = None
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class ParsedResponse:
    """Text and token counts extracted from a successful provider payload."""

    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass
class UsageRecord:
    """Token usage and timing of one successful call."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    generation_time_ms: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "generation_time_ms": self.generation_time_ms,
        }


@dataclass
class Success:
    text: str
    usage: UsageRecord
    generation_time_ms: int = 0

    @property
    def ok(self) -> bool:
        return True


@dataclass
class Failure:
    classification: ErrorClassification
    message: str
    status_code: int = 0

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Success, Failure]


@dataclass
class AttemptLogEntry:
    """One failed dispatch, kept for the aggregate error."""

    candidate: Candidate
    classification: ErrorClassification
    message: str

    def to_dict(self) -> dict[str, str]:
        return {
            "model_id": self.candidate.model_id,
            "provider_id": self.candidate.provider_id,
            "classification": self.classification.value,
            "message": self.message,
        }


@dataclass
class GenerationResult:
    """Successful outcome of FallbackOrchestrator.generate()."""

    text: str
    usage: UsageRecord
    model_used: str
    attempts: list[AttemptLogEntry] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return bool(self.attempts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "usage": self.usage.to_dict(),
            "model_used": self.model_used,
            "attempts": [a.to_dict() for a in self.attempts],
        }
