"""
run_generate.py — End-to-end generation through the fallback layer

Runs one generation with the providers configured in .env:
  1. Show configured providers and the candidate queue
  2. Probe the local Ollama server (when enabled)
  3. Generate a comment, falling back across models if needed
  4. Print usage, session cost and rate tracker stats

Usage:
    python run_generate.py "Write a short end-of-term comment for a diligent student."
"""

import asyncio
import json
import logging
import sys
import time

from bulletin_ai.core.config import settings, validate_settings
from bulletin_ai.core.logging import setup_logging
from bulletin_ai.gateway.events import FALLBACK_OCCURRED, EventBus
from bulletin_ai.gateway.executor import fetch_ollama_models
from bulletin_ai.gateway.errors import GenerationError
from bulletin_ai.gateway.orchestrator import FallbackOrchestrator
from bulletin_ai.gateway.types import ProviderCredentials
from bulletin_ai.gateway.usage import SessionUsage

logger = logging.getLogger("run_generate")

DEFAULT_PROMPT = (
    "Write a two-sentence end-of-term comment for a student who is diligent, "
    "participates in class and could improve the care taken over written work."
)


def _banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(f"  {title}")
    print("=" * 60)


async def main() -> int:
    setup_logging()
    validate_settings()
    prompt = " ".join(sys.argv[1:]) or DEFAULT_PROMPT

    credentials = ProviderCredentials.from_settings(settings)

    _banner("Step 1: Providers")
    for provider_id, key in settings.provider_api_keys.items():
        print(f"  {provider_id:11s} {'✓ configured' if key else '✗ no key'}")
    print(f"  {'ollama':11s} {'✓ enabled' if settings.ollama_enabled else '✗ disabled'}")

    if settings.ollama_enabled:
        _banner("Step 2: Ollama")
        models = await fetch_ollama_models(settings.ollama_base_url)
        if models is None:
            print(f"  ✗ Not reachable at {settings.ollama_base_url}")
            credentials.ollama_enabled = False
        else:
            credentials.ollama_installed_models = models
            print(f"  ✓ {len(models)} model(s): {', '.join(models) or '-'}")

    events = EventBus()
    events.subscribe(
        FALLBACK_OCCURRED,
        lambda e: print(f"  ↪ fallback {e.original_model} → {e.used_model} ({e.reason})"),
    )
    usage = SessionUsage()
    orchestrator = FallbackOrchestrator.from_settings(
        settings,
        events=events,
        session_usage=usage,
        credentials=credentials,
    )

    queue = orchestrator.candidate_queue()
    print(f"\n  Candidate queue ({sum(c.has_credential for c in queue)}/{len(queue)} usable):")
    for c in queue:
        print(f"    {'✓' if c.has_credential else '·'} {c.model_id} [{c.provider_id}]")

    _banner("Step 3: Generate")
    start = time.monotonic()
    try:
        result = await orchestrator.generate(
            prompt,
            context="cli",
            on_wait=lambda ms: print(f"  … waiting {orchestrator.rate_tracker.format_time(ms)} (rate limit)"),
        )
    except GenerationError as e:
        print(f"\n  ❌ {e.message}")
        for attempt in e.attempts:
            print(f"    - {attempt.candidate.model_id}: [{attempt.classification.value}] {attempt.message}")
        return 1

    print(f"\n  ✓ {result.model_used} in {time.monotonic() - start:.1f}s\n")
    print(result.text)

    _banner("Step 4: Usage")
    print(json.dumps(result.usage.to_dict(), indent=4))
    print(json.dumps(usage.get_stats(), indent=4))
    print(json.dumps(orchestrator.rate_tracker.get_stats(result.model_used), indent=4))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
