"""Model catalog: pacing, fallback chains, provider order and pricing.

All tables are keyed by the application's model ids (e.g. "openai-gpt-4o-mini",
"mistral-direct-small-latest"), not by the ids the vendors use on the wire.
Adapters translate between the two.
"""

from __future__ import annotations

from bulletin_ai.gateway.types import ModelPricing, ModelRateLimit, ProviderId

DEFAULT_RATE_LIMIT = ModelRateLimit(base_delay_ms=6000, requests_per_minute=10)

# ---------------------------------------------------------------------------
# Per-model pacing
# ---------------------------------------------------------------------------

RATE_LIMITS: dict[str, ModelRateLimit] = {
    # Google Gemini free tier: strict quotas
    "gemini-2.5-flash": ModelRateLimit(6000, 10),
    "gemini-3-flash-preview": ModelRateLimit(6000, 10),
    "gemini-2.0-flash": ModelRateLimit(4000, 15),
    "gemini-2.0-flash-lite": ModelRateLimit(2000, 30),
    "gemini-2.5-pro": ModelRateLimit(12000, 5),
    # Paid APIs
    "openai-gpt-4o-mini": ModelRateLimit(200, 500),
    "openai-gpt-4o": ModelRateLimit(200, 500),
    "openai-gpt-3.5-turbo": ModelRateLimit(200, 500),
    "mistral-small": ModelRateLimit(600, 100),
    "mistral-large": ModelRateLimit(600, 100),
    "openrouter": ModelRateLimit(600, 100),
    # OpenRouter free models
    "devstral-free": ModelRateLimit(3000, 20),
    "llama-3.3-70b-free": ModelRateLimit(4000, 15),
    # Ollama (local)
    "ollama-qwen3:8b": ModelRateLimit(500, 999),
    "ollama-mistral": ModelRateLimit(500, 999),
    "ollama-gemma3:4b": ModelRateLimit(500, 999),
    "ollama-deepseek-r1:8b": ModelRateLimit(1000, 999),  # reasoning model, slower
}

# ---------------------------------------------------------------------------
# Fallback chains
# ---------------------------------------------------------------------------

FALLBACK_MODELS: dict[str, list[str]] = {
    ProviderId.GOOGLE.value: [
        "gemini-3-flash-preview",
        "gemini-2.5-flash",
        "gemini-1.5-flash",
        "gemini-1.5-pro-001",
        "gemini-2.0-flash-lite",
    ],
    ProviderId.OPENAI.value: ["openai-gpt-4o-mini", "openai-gpt-3.5-turbo", "openai-gpt-4o"],
    ProviderId.OPENROUTER.value: [
        "devstral-free",
        "llama-3.3-70b-free",
        "claude-sonnet-4.5",
        "ministral-3b",
        "amazon-nova-v1-lite",
        "openrouter",
        "mistral-small",
        "mistral-large",
    ],
    ProviderId.OLLAMA.value: ["ollama-qwen3:8b", "ollama-mistral", "ollama-deepseek-r1:8b", "ollama-gemma3:4b"],
    ProviderId.ANTHROPIC.value: ["anthropic-claude-sonnet-4.5", "anthropic-claude-opus-4.5"],
    ProviderId.MISTRAL.value: ["mistral-direct-small-latest", "mistral-direct-large-latest"],
}

# Local first, then free tiers, then paid
PROVIDER_ORDER: list[str] = [
    ProviderId.OLLAMA.value,
    ProviderId.GOOGLE.value,
    ProviderId.MISTRAL.value,
    ProviderId.OPENROUTER.value,
    ProviderId.ANTHROPIC.value,
    ProviderId.OPENAI.value,
]

# ---------------------------------------------------------------------------
# Pricing (USD per 1M tokens); unknown models are not costed
# ---------------------------------------------------------------------------

COSTS_PER_MILLION_TOKENS: dict[str, ModelPricing] = {
    # Google
    "gemini-1.5-flash-001": ModelPricing(0.35, 0.70),
    "gemini-1.5-pro-001": ModelPricing(3.50, 10.50),
    "gemini-1.5-flash": ModelPricing(0.35, 0.70),
    "gemini-2.5-flash": ModelPricing(0.35, 0.70),
    "gemini-3-flash-preview": ModelPricing(0.35, 0.70),
    "gemini-2.5-pro": ModelPricing(1.25, 10.00),
    "gemini-3-pro": ModelPricing(2.00, 12.00),
    "gemini-2.0-flash": ModelPricing(0.35, 0.70),
    "gemini-2.0-flash-lite": ModelPricing(0.20, 0.40),
    # OpenAI
    "openai-gpt-3.5-turbo": ModelPricing(0.50, 1.50),
    "openai-gpt-4o": ModelPricing(5.00, 15.00),
    "openai-gpt-4o-mini": ModelPricing(0.15, 0.60),
    "openai-gpt-4-turbo": ModelPricing(10.00, 30.00),
    # OpenRouter
    "devstral-free": ModelPricing(0, 0),
    "llama-3.3-70b-free": ModelPricing(0, 0),
    "ministral-3b": ModelPricing(0.10, 0.10),
    "amazon-nova-v1-lite": ModelPricing(0.06, 0.24),
    "openrouter": ModelPricing(0.14, 0.28),  # DeepSeek V3
    "mistral-small": ModelPricing(0.10, 0.30),
    "mistral-large": ModelPricing(2.00, 6.00),
    "claude-sonnet-4.5": ModelPricing(3.00, 15.00),
    # Ollama (local)
    "ollama-qwen3:8b": ModelPricing(0, 0),
    "ollama-mistral": ModelPricing(0, 0),
    "ollama-gemma3:4b": ModelPricing(0, 0),
    # Anthropic
    "anthropic-claude-sonnet-4.5": ModelPricing(3.00, 15.00),
    "anthropic-claude-opus-4.5": ModelPricing(5.00, 25.00),
    # Mistral
    "mistral-direct-large-latest": ModelPricing(0.50, 1.50),
    "mistral-direct-small-latest": ModelPricing(0.10, 0.30),
}


def provider_for_model(model_id: str) -> str:
    """Resolve the provider that serves a model id.

    Free OpenRouter models carry a "-free" suffix and are routed there even
    when their name looks like another vendor's (e.g. "gemini-2.0-flash-exp-free").
    """
    if model_id.endswith("-free"):
        return ProviderId.OPENROUTER.value
    if model_id.startswith("openai"):
        return ProviderId.OPENAI.value
    if model_id.startswith("gemini"):
        return ProviderId.GOOGLE.value
    if model_id.startswith("ollama"):
        return ProviderId.OLLAMA.value
    if model_id.startswith("anthropic"):
        return ProviderId.ANTHROPIC.value
    if model_id.startswith("mistral-direct"):
        return ProviderId.MISTRAL.value
    return ProviderId.OPENROUTER.value
