"""Prometheus metrics for AI provider calls."""

from prometheus_client import Counter, Histogram, Info, generate_latest

# --- Metrics ---

APP_INFO = Info("bulletin_ai", "Bulletin AI generation layer info")
APP_INFO.info({"version": "0.1.0", "name": "bulletin_ai"})

AI_CALL_ATTEMPTS = Counter(
    "ai_call_attempts_total",
    "Total provider call attempts",
    ["provider", "model", "outcome"],
)

AI_CALL_DURATION = Histogram(
    "ai_call_duration_seconds",
    "Provider call duration in seconds",
    ["provider"],
    buckets=[0.25, 0.5, 1, 2.5, 5, 10, 25, 60, 120],
)

AI_TOKENS = Counter(
    "ai_tokens_total",
    "Tokens consumed by successful calls",
    ["model", "direction"],
)

AI_FALLBACKS = Counter(
    "ai_fallbacks_total",
    "Generations served by a model other than the first candidate",
)

AI_RATE_BACKOFFS = Counter(
    "ai_rate_backoffs_total",
    "Delay increases triggered by quota errors",
    ["model"],
)


def metrics_text() -> bytes:
    """Render all registered metrics in the Prometheus exposition format."""
    return generate_latest()
