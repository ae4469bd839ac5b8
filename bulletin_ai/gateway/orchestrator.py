"""Fallback Orchestrator — turns one prompt into one coherent outcome.

Flow for generate():
  1. Emit generation-start
  2. Build the candidate queue (selected model, its provider's chain, then
     the other providers in priority order) and drop candidates without
     credentials
  3. For each candidate: RateTracker.wait_if_needed -> RequestExecutor.execute
       success        -> mark_success, fallback-occurred if not first, return
       auth/cancelled -> raise immediately, no further candidates
       anything else  -> log, mark_error_429 on quota, next candidate
  4. Exhausted -> one aggregate GenerationError
  5. Emit generation-end, whatever happened
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Callable

from bulletin_ai.core.metrics import AI_FALLBACKS
from bulletin_ai.gateway.cancellation import CancelToken
from bulletin_ai.gateway.catalog import FALLBACK_MODELS, PROVIDER_ORDER, provider_for_model
from bulletin_ai.gateway.errors import GenerationError, NoCredentialsError, OperationCancelled
from bulletin_ai.gateway.events import (
    FALLBACK_OCCURRED,
    GENERATION_END,
    GENERATION_START,
    EventBus,
    FallbackOccurred,
    GenerationEnded,
    GenerationStarted,
)
from bulletin_ai.gateway.executor import RequestExecutor
from bulletin_ai.gateway.rate_tracker import RateTracker, extract_retry_after
from bulletin_ai.gateway.types import (
    AttemptLogEntry,
    Candidate,
    ErrorClassification,
    GenerationResult,
    ProviderCredentials,
    Success,
)
from bulletin_ai.gateway.usage import SessionUsage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Candidate queue
# ---------------------------------------------------------------------------


def build_candidate_queue(
    selected_model: str,
    credentials: ProviderCredentials,
    *,
    fallback_enabled: bool = True,
    fallback_models: dict[str, list[str]] | None = None,
    provider_order: list[str] | None = None,
) -> list[Candidate]:
    """Ordered, de-duplicated candidates for a generation.

    Order: the selected model, the rest of its provider's chain, then every
    other provider's chain in provider_order. Candidates keep their
    has_credential flag; filtering is the caller's job.
    """
    chains = FALLBACK_MODELS if fallback_models is None else fallback_models
    order = PROVIDER_ORDER if provider_order is None else provider_order

    model_ids = [selected_model]
    if fallback_enabled:
        primary_provider = provider_for_model(selected_model)
        model_ids.extend(chains.get(primary_provider, []))
        for provider_id in order:
            if provider_id != primary_provider:
                model_ids.extend(chains.get(provider_id, []))

    queue: list[Candidate] = []
    seen: set[str] = set()
    for model_id in model_ids:
        if model_id in seen:
            continue
        seen.add(model_id)
        provider_id = provider_for_model(model_id)
        queue.append(
            Candidate(
                model_id=model_id,
                provider_id=provider_id,
                has_credential=credentials.has_credential(model_id, provider_id),
            )
        )
    return queue


# ---------------------------------------------------------------------------
# Aggregate error
# ---------------------------------------------------------------------------


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'s' if count != 1 else ''}"


def _model_ids(attempts: list[AttemptLogEntry]) -> str:
    return ", ".join(a.candidate.model_id for a in attempts)


def dominant_classification(attempts: list[AttemptLogEntry]) -> ErrorClassification:
    """Most frequent classification; ties go to the one seen first."""
    if not attempts:
        return ErrorClassification.UNKNOWN
    counts = Counter(a.classification for a in attempts)
    # Counter preserves insertion order, and most_common is stable on ties
    return counts.most_common(1)[0][0]


def build_exhaustion_error(attempts: list[AttemptLogEntry], skipped_count: int = 0) -> GenerationError:
    """Single user-facing error once every candidate has failed."""
    attempted = len(attempts)
    classification = dominant_classification(attempts)
    retry_after_ms: int | None = None

    if classification == ErrorClassification.QUOTA:
        hints = [extract_retry_after(a.message) for a in attempts if a.classification == ErrorClassification.QUOTA]
        hints = [h for h in hints if h]
        retry_after_ms = max(hints) if hints else None
        if retry_after_ms:
            retry_info = f"Retry in ~{-(-retry_after_ms // 1000)} s."
        else:
            retry_info = "Retry in a few moments."
        message = f"Quota reached ({_plural(attempted, 'model')} tried). {retry_info}"
        if skipped_count:
            message += " Add an API key for another provider to enable automatic fallback."
    elif classification == ErrorClassification.NOT_FOUND:
        message = f"Model unavailable ({_plural(attempted, 'model')} tried: {_model_ids(attempts)})."
    else:
        model_ids = _model_ids(attempts)
        message = f"Failed after {_plural(attempted, 'model')} ({model_ids}): {_describe(classification)}."

    if skipped_count and classification != ErrorClassification.QUOTA:
        message += f" {skipped_count} skipped (missing credentials)."

    return GenerationError(
        message,
        classification,
        attempts=list(attempts),
        attempted_count=attempted,
        skipped_count=skipped_count,
        retry_after_ms=retry_after_ms,
    )


_DESCRIPTIONS = {
    ErrorClassification.TIMEOUT: "the providers did not answer in time",
    ErrorClassification.EMPTY_RESPONSE: "the models returned empty text",
    ErrorClassification.UNKNOWN: "the providers returned errors",
}


def _describe(classification: ErrorClassification) -> str:
    return _DESCRIPTIONS.get(classification, classification.value.replace("_", " "))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class FallbackOrchestrator:
    """Drives candidates in order until one succeeds.

    Usage:
        orchestrator = FallbackOrchestrator.from_settings(settings)
        result = await orchestrator.generate(prompt, context="single-student", name_hint="Alice")
        print(result.text, result.model_used)
    """

    def __init__(
        self,
        rate_tracker: RateTracker,
        executor: RequestExecutor,
        credentials: ProviderCredentials,
        *,
        selected_model: str,
        fallback_enabled: bool = True,
        events: EventBus | None = None,
        fallback_models: dict[str, list[str]] | None = None,
        provider_order: list[str] | None = None,
    ):
        self.rate_tracker = rate_tracker
        self.executor = executor
        self.credentials = credentials
        self.selected_model = selected_model
        self.fallback_enabled = fallback_enabled
        self.events = events if events is not None else EventBus()
        self.fallback_models = fallback_models
        self.provider_order = provider_order

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        events: EventBus | None = None,
        session_usage: SessionUsage | None = None,
        rate_tracker: RateTracker | None = None,
        credentials: ProviderCredentials | None = None,
    ) -> FallbackOrchestrator:
        return cls(
            rate_tracker=rate_tracker if rate_tracker is not None else RateTracker.from_settings(settings),
            executor=RequestExecutor.from_settings(settings, session_usage=session_usage),
            credentials=credentials if credentials is not None else ProviderCredentials.from_settings(settings),
            selected_model=settings.current_ai_model,
            fallback_enabled=settings.enable_api_fallback,
            events=events,
        )

    def candidate_queue(self, model: str | None = None) -> list[Candidate]:
        return build_candidate_queue(
            model or self.selected_model,
            self.credentials,
            fallback_enabled=self.fallback_enabled,
            fallback_models=self.fallback_models,
            provider_order=self.provider_order,
        )

    async def generate(
        self,
        prompt: str,
        *,
        cancel_token: CancelToken | None = None,
        context: str | None = None,
        name_hint: str | None = None,
        model: str | None = None,
        timeout_ms: int | None = None,
        on_wait: Callable[[int], None] | None = None,
    ) -> GenerationResult:
        self.events.emit(GENERATION_START, GenerationStarted(context=context, name_hint=name_hint))
        try:
            return await self._run(prompt, cancel_token, model, timeout_ms, on_wait)
        finally:
            self.events.emit(GENERATION_END, GenerationEnded(context=context, name_hint=name_hint))

    async def _run(
        self,
        prompt: str,
        cancel_token: CancelToken | None,
        model: str | None,
        timeout_ms: int | None,
        on_wait: Callable[[int], None] | None,
    ) -> GenerationResult:
        queue = self.candidate_queue(model)
        usable = [c for c in queue if c.has_credential]
        skipped_count = len(queue) - len(usable)

        if not usable:
            logger.error("No credentials for any of %d candidate models", len(queue))
            raise NoCredentialsError(skipped_count=skipped_count)

        attempts: list[AttemptLogEntry] = []
        first_model = usable[0].model_id

        for candidate in usable:
            try:
                await self.rate_tracker.wait_if_needed(candidate.model_id, on_wait=on_wait, cancel_token=cancel_token)
            except OperationCancelled as e:
                attempts.append(AttemptLogEntry(candidate, ErrorClassification.CANCELLED, e.message))
                raise self._terminal(ErrorClassification.CANCELLED, e.message, attempts, skipped_count) from e

            outcome = await self.executor.execute(
                candidate,
                prompt,
                timeout_ms=timeout_ms,
                cancel_token=cancel_token,
            )

            if isinstance(outcome, Success):
                self.rate_tracker.mark_success(candidate.model_id)
                if candidate.model_id != first_model:
                    reason = attempts[-1].message if attempts else ""
                    AI_FALLBACKS.inc()
                    logger.info(
                        "Fell back from %s to %s: %s",
                        first_model,
                        candidate.model_id,
                        reason,
                        extra={"model_id": candidate.model_id, "provider_id": candidate.provider_id},
                    )
                    self.events.emit(
                        FALLBACK_OCCURRED,
                        FallbackOccurred(original_model=first_model, used_model=candidate.model_id, reason=reason),
                    )
                return GenerationResult(
                    text=outcome.text,
                    usage=outcome.usage,
                    model_used=candidate.model_id,
                    attempts=attempts,
                )

            attempts.append(AttemptLogEntry(candidate, outcome.classification, outcome.message))

            if not outcome.classification.is_retryable:
                raise self._terminal(outcome.classification, outcome.message, attempts, skipped_count)

            if outcome.classification == ErrorClassification.QUOTA:
                self.rate_tracker.mark_error_429(candidate.model_id, outcome.message)

        error = build_exhaustion_error(attempts, skipped_count)
        logger.error("All candidates failed: %s", error.message, extra={"classification": error.classification.value})
        raise error

    @staticmethod
    def _terminal(
        classification: ErrorClassification,
        message: str,
        attempts: list[AttemptLogEntry],
        skipped_count: int,
    ) -> GenerationError:
        if classification == ErrorClassification.CANCELLED:
            logger.info("Generation cancelled by the caller")
            summary = "Generation cancelled."
        else:
            logger.error(
                "Generation aborted on %s: %s",
                attempts[-1].candidate.model_id,
                message,
                extra={"model_id": attempts[-1].candidate.model_id, "classification": classification.value},
            )
            summary = f"Authentication failed for {attempts[-1].candidate.model_id}. Check the API key."
        return GenerationError(
            summary,
            classification,
            attempts=list(attempts),
            attempted_count=len(attempts),
            skipped_count=skipped_count,
        )
