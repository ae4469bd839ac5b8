"""Tests for the FallbackOrchestrator and candidate queue."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from bulletin_ai.core.config import Settings
from bulletin_ai.gateway.cancellation import CancelToken
from bulletin_ai.gateway.errors import GenerationError, NoCredentialsError
from bulletin_ai.gateway.events import (
    FALLBACK_OCCURRED,
    GENERATION_END,
    GENERATION_START,
    EventBus,
)
from bulletin_ai.gateway.executor import RequestExecutor
from bulletin_ai.gateway.orchestrator import (
    FallbackOrchestrator,
    build_candidate_queue,
    build_exhaustion_error,
    dominant_classification,
)
from bulletin_ai.gateway.provider_adapters import MistralAdapter, OpenRouterAdapter
from bulletin_ai.gateway.rate_tracker import RateTracker
from bulletin_ai.gateway.storage import MemoryStore
from bulletin_ai.gateway.types import (
    AttemptLogEntry,
    Candidate,
    ErrorClassification,
    Failure,
    ProviderCredentials,
    Success,
    UsageRecord,
)

from tests.conftest import make_httpx_response

CHAINS = {
    "google": ["gemini-3-flash-preview", "gemini-2.5-flash", "gemini-2.0-flash-lite"],
    "openai": ["openai-gpt-4o-mini", "openai-gpt-4o"],
    "mistral": ["mistral-direct-small-latest"],
}
ORDER = ["google", "mistral", "openai"]


def _ok(text="Great term.", tokens=(10, 5)):
    return Success(
        text=text,
        usage=UsageRecord(prompt_tokens=tokens[0], completion_tokens=tokens[1], total_tokens=sum(tokens)),
        generation_time_ms=120,
    )


def _fail(classification, message="boom"):
    return Failure(classification=classification, message=message)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, name):
        return lambda payload: self.events.append((name, payload))


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorder(events):
    rec = Recorder()
    for name in (GENERATION_START, GENERATION_END, FALLBACK_OCCURRED):
        events.subscribe(name, rec(name))
    return rec


@pytest.fixture
def executor():
    return AsyncMock(spec=RequestExecutor)


def _orchestrator(tracker, executor, events, credentials=None, selected="gemini-2.5-flash", fallback_enabled=True):
    return FallbackOrchestrator(
        tracker,
        executor,
        credentials or ProviderCredentials(api_keys={"google": "AIza", "openai": "sk"}),
        selected_model=selected,
        fallback_enabled=fallback_enabled,
        events=events,
        fallback_models=CHAINS,
        provider_order=ORDER,
    )


def _dispatched(executor):
    return [call.args[0].model_id for call in executor.execute.call_args_list]


# ==========================================================================
# Test: candidate queue
# ==========================================================================


class TestCandidateQueue:
    def test_selected_then_chain_then_other_providers(self):
        creds = ProviderCredentials(api_keys={"google": "k"})
        queue = build_candidate_queue("gemini-2.5-flash", creds, fallback_models=CHAINS, provider_order=ORDER)
        assert [c.model_id for c in queue] == [
            "gemini-2.5-flash",
            "gemini-3-flash-preview",
            "gemini-2.0-flash-lite",
            "mistral-direct-small-latest",
            "openai-gpt-4o-mini",
            "openai-gpt-4o",
        ]

    def test_credential_flags(self):
        creds = ProviderCredentials(api_keys={"google": "k"})
        queue = build_candidate_queue("gemini-2.5-flash", creds, fallback_models=CHAINS, provider_order=ORDER)
        flags = {c.provider_id: c.has_credential for c in queue}
        assert flags == {"google": True, "mistral": False, "openai": False}

    def test_model_outside_catalog_leads(self):
        creds = ProviderCredentials(api_keys={"openrouter": "k"})
        queue = build_candidate_queue("qwen-custom", creds, fallback_models=CHAINS, provider_order=ORDER)
        assert queue[0] == Candidate("qwen-custom", "openrouter", True)

    def test_fallback_disabled(self):
        creds = ProviderCredentials(api_keys={"google": "k"})
        queue = build_candidate_queue(
            "gemini-2.5-flash", creds, fallback_enabled=False, fallback_models=CHAINS, provider_order=ORDER
        )
        assert [c.model_id for c in queue] == ["gemini-2.5-flash"]

    def test_default_catalog_provider_order(self):
        creds = ProviderCredentials(ollama_enabled=True)
        queue = build_candidate_queue("ollama-mistral", creds)
        providers = []
        for c in queue:
            if c.provider_id not in providers:
                providers.append(c.provider_id)
        assert providers == ["ollama", "google", "mistral", "openrouter", "anthropic", "openai"]
        assert len({c.model_id for c in queue}) == len(queue)


# ==========================================================================
# Test: generate()
# ==========================================================================


class TestGenerate:
    @pytest.mark.asyncio
    async def test_first_candidate_succeeds(self, tracker, executor, events, recorder):
        executor.execute.side_effect = [_ok()]
        orch = _orchestrator(tracker, executor, events)

        result = await orch.generate("prompt", context="single-student", name_hint="Alice")

        assert result.text == "Great term."
        assert result.model_used == "gemini-2.5-flash"
        assert result.used_fallback is False
        assert [name for name, _ in recorder.events] == [GENERATION_START, GENERATION_END]
        assert recorder.events[0][1].name_hint == "Alice"
        assert recorder.events[1][1].context == "single-student"

    @pytest.mark.asyncio
    async def test_quota_quota_success(self, tracker, executor, events, recorder):
        executor.execute.side_effect = [
            _fail(ErrorClassification.QUOTA, "API error 429: retry in 2s"),
            _fail(ErrorClassification.QUOTA, "API error 429: quota"),
            _ok(),
        ]
        orch = _orchestrator(tracker, executor, events)

        with patch.object(tracker, "mark_error_429", wraps=tracker.mark_error_429) as marked:
            result = await orch.generate("prompt")

        assert result.model_used == "gemini-2.0-flash-lite"
        assert marked.call_count == 2
        assert [c.args[0] for c in marked.call_args_list] == ["gemini-2.5-flash", "gemini-3-flash-preview"]
        fallbacks = [p for name, p in recorder.events if name == FALLBACK_OCCURRED]
        assert len(fallbacks) == 1
        assert fallbacks[0].original_model == "gemini-2.5-flash"
        assert fallbacks[0].used_model == "gemini-2.0-flash-lite"
        assert fallbacks[0].reason == "API error 429: quota"
        assert len(result.attempts) == 2

    @pytest.mark.asyncio
    async def test_success_marks_tracker(self, tracker, executor, events):
        executor.execute.side_effect = [_ok()]
        orch = _orchestrator(tracker, executor, events)
        await orch.generate("prompt")
        assert tracker.get_stats("gemini-2.5-flash")["success_streak"] == 1

    @pytest.mark.asyncio
    async def test_timeout_and_not_found_advance(self, tracker, executor, events):
        executor.execute.side_effect = [
            _fail(ErrorClassification.TIMEOUT),
            _fail(ErrorClassification.NOT_FOUND),
            _fail(ErrorClassification.EMPTY_RESPONSE),
            _ok(),
        ]
        orch = _orchestrator(tracker, executor, events)
        result = await orch.generate("prompt")
        assert result.model_used == "openai-gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_skips_candidates_without_credentials(self, tracker, executor, events):
        executor.execute.side_effect = [_fail(ErrorClassification.UNKNOWN)] * 3 + [_ok()]
        orch = _orchestrator(tracker, executor, events)
        await orch.generate("prompt")
        assert "mistral-direct-small-latest" not in _dispatched(executor)

    @pytest.mark.asyncio
    async def test_candidates_tried_in_order_one_at_a_time(self, tracker, executor, events):
        in_flight = 0
        peak = 0

        async def slow_failure(candidate, prompt, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return _fail(ErrorClassification.UNKNOWN)

        executor.execute.side_effect = slow_failure
        orch = _orchestrator(tracker, executor, events)
        with pytest.raises(GenerationError):
            await orch.generate("prompt")
        assert peak == 1
        assert _dispatched(executor) == [
            "gemini-2.5-flash",
            "gemini-3-flash-preview",
            "gemini-2.0-flash-lite",
            "openai-gpt-4o-mini",
            "openai-gpt-4o",
        ]

    @pytest.mark.asyncio
    async def test_model_override(self, tracker, executor, events):
        executor.execute.side_effect = [_ok()]
        orch = _orchestrator(tracker, executor, events)
        result = await orch.generate("prompt", model="openai-gpt-4o")
        assert result.model_used == "openai-gpt-4o"

    @pytest.mark.asyncio
    async def test_rate_limit_wait_reported(self, tracker, executor, events, clock):
        executor.execute.side_effect = [_ok(), _ok()]
        orch = _orchestrator(tracker, executor, events)
        waits = []
        await orch.generate("prompt")
        await orch.generate("prompt", on_wait=waits.append)
        assert waits == [6000]
        assert clock.sleeps == [pytest.approx(6.0)]


class TestTerminalFailures:
    @pytest.mark.asyncio
    async def test_auth_stops_immediately(self, tracker, executor, events, recorder):
        executor.execute.side_effect = [_fail(ErrorClassification.AUTH, "API error 401: bad key"), _ok()]
        orch = _orchestrator(tracker, executor, events)

        with pytest.raises(GenerationError) as exc_info:
            await orch.generate("prompt")

        assert exc_info.value.classification == ErrorClassification.AUTH
        assert executor.execute.call_count == 1
        assert recorder.events[-1][0] == GENERATION_END

    @pytest.mark.asyncio
    async def test_cancelled_first_candidate(self, tracker, executor, events, recorder):
        executor.execute.side_effect = [_fail(ErrorClassification.CANCELLED, "Operation cancelled by the caller."), _ok()]
        orch = _orchestrator(tracker, executor, events)

        with pytest.raises(GenerationError) as exc_info:
            await orch.generate("prompt", cancel_token=CancelToken())

        assert exc_info.value.classification == ErrorClassification.CANCELLED
        assert executor.execute.call_count == 1
        assert [name for name, _ in recorder.events] == [GENERATION_START, GENERATION_END]

    @pytest.mark.asyncio
    async def test_cancelled_during_rate_limit_wait(self, events, executor, recorder):
        token = CancelToken()

        async def cancelling_sleep(seconds):
            token.cancel()
            await asyncio.sleep(0)

        tracker = RateTracker(
            {},
            MemoryStore(),
            default_delay_ms=6000,
            sleep=cancelling_sleep,
        )
        executor.execute.side_effect = [_ok(), _ok()]
        orch = _orchestrator(tracker, executor, events)
        await orch.generate("prompt")

        with pytest.raises(GenerationError) as exc_info:
            await orch.generate("prompt", cancel_token=token)

        assert exc_info.value.classification == ErrorClassification.CANCELLED
        assert executor.execute.call_count == 1

    @pytest.mark.asyncio
    async def test_no_credentials(self, tracker, executor, events, recorder):
        orch = _orchestrator(tracker, executor, events, credentials=ProviderCredentials())

        with pytest.raises(NoCredentialsError) as exc_info:
            await orch.generate("prompt")

        executor.execute.assert_not_called()
        assert exc_info.value.skipped_count == 6
        assert [name for name, _ in recorder.events] == [GENERATION_START, GENERATION_END]

    @pytest.mark.asyncio
    async def test_failing_event_handler_does_not_break_generation(self, tracker, executor, events):
        def broken(payload):
            raise RuntimeError("ui went away")

        events.subscribe(GENERATION_START, broken)
        executor.execute.side_effect = [_ok()]
        orch = _orchestrator(tracker, executor, events)
        result = await orch.generate("prompt")
        assert result.text == "Great term."


# ==========================================================================
# Test: exhaustion error
# ==========================================================================


def _attempt(model_id, classification, message="boom"):
    return AttemptLogEntry(Candidate(model_id, "google"), classification, message)


class TestExhaustionError:
    @pytest.mark.asyncio
    async def test_all_quota(self, tracker, executor, events):
        executor.execute.side_effect = [
            _fail(ErrorClassification.QUOTA, "Please retry in 3.5s"),
            _fail(ErrorClassification.QUOTA, "Please retry in 41s"),
            _fail(ErrorClassification.QUOTA, "quota"),
            _fail(ErrorClassification.QUOTA, "quota"),
            _fail(ErrorClassification.QUOTA, "quota"),
        ]
        orch = _orchestrator(tracker, executor, events)

        with pytest.raises(GenerationError) as exc_info:
            await orch.generate("prompt")

        err = exc_info.value
        assert err.classification == ErrorClassification.QUOTA
        assert err.attempted_count == 5
        assert err.skipped_count == 1
        assert err.retry_after_ms == 41500
        assert str(err).startswith("Quota reached (5 models tried). Retry in ~42 s.")
        assert "another provider" in str(err)
        assert "Please retry" not in str(err)
        assert err.attempted_models[0] == "gemini-2.5-flash"

    def test_quota_without_hint(self):
        err = build_exhaustion_error([_attempt("a", ErrorClassification.QUOTA, "429")])
        assert err.message == "Quota reached (1 model tried). Retry in a few moments."

    def test_not_found_dominant(self):
        attempts = [
            _attempt("a", ErrorClassification.NOT_FOUND),
            _attempt("b", ErrorClassification.NOT_FOUND),
            _attempt("c", ErrorClassification.TIMEOUT),
        ]
        err = build_exhaustion_error(attempts, skipped_count=2)
        assert err.classification == ErrorClassification.NOT_FOUND
        assert err.message == "Model unavailable (3 models tried: a, b, c). 2 skipped (missing credentials)."

    def test_generic_lists_models(self):
        attempts = [_attempt("a", ErrorClassification.TIMEOUT), _attempt("b", ErrorClassification.TIMEOUT)]
        err = build_exhaustion_error(attempts)
        assert err.classification == ErrorClassification.TIMEOUT
        assert err.message == "Failed after 2 models (a, b): the providers did not answer in time."

    def test_raw_messages_kept_in_attempts(self):
        attempts = [_attempt("a", ErrorClassification.UNKNOWN, '{"error": "secret payload"}')]
        err = build_exhaustion_error(attempts)
        assert "secret payload" not in err.message
        assert err.attempts[0].message == '{"error": "secret payload"}'

    def test_tie_goes_to_first_seen(self):
        attempts = [
            _attempt("a", ErrorClassification.TIMEOUT),
            _attempt("b", ErrorClassification.QUOTA),
        ]
        assert dominant_classification(attempts) == ErrorClassification.TIMEOUT

    def test_empty_attempts(self):
        assert dominant_classification([]) == ErrorClassification.UNKNOWN


# ==========================================================================
# Test: malformed provider replies
# ==========================================================================


class TestMalformedReplies:
    @pytest.mark.asyncio
    async def test_null_choice_falls_back_to_next_provider(self, tracker, events, recorder):
        executor = RequestExecutor(
            {"mistral": MistralAdapter(api_key="m-key"), "openrouter": OpenRouterAdapter(api_key="or-key")}
        )
        orch = FallbackOrchestrator(
            tracker,
            executor,
            ProviderCredentials(api_keys={"mistral": "m-key", "openrouter": "or-key"}),
            selected_model="mistral-direct-small-latest",
            events=events,
            fallback_models={"mistral": ["mistral-direct-small-latest"], "openrouter": ["devstral-free"]},
            provider_order=["mistral", "openrouter"],
        )
        valid = {"choices": [{"message": {"content": "Bon travail."}}]}

        with patch("bulletin_ai.gateway.executor.httpx.AsyncClient") as MockClient:
            mock_client = AsyncMock()
            mock_client.request.side_effect = [
                make_httpx_response(200, {"choices": [None]}),
                make_httpx_response(200, valid),
            ]
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=False)
            MockClient.return_value = mock_client

            result = await orch.generate("prompt")

        assert result.text == "Bon travail."
        assert result.model_used == "devstral-free"
        assert [a.classification for a in result.attempts] == [ErrorClassification.UNKNOWN]
        assert mock_client.request.call_count == 2
        assert [name for name, _ in recorder.events] == [GENERATION_START, FALLBACK_OCCURRED, GENERATION_END]


# ==========================================================================
# Test: wiring from settings
# ==========================================================================


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_end_to_end_with_mocked_http(self):
        settings = Settings(
            _env_file=None,
            google_api_key="AIza-test",
            current_ai_model="gemini-2.5-flash",
            rate_state_backend="memory",
        )
        orch = FallbackOrchestrator.from_settings(settings)
        payload = {
            "candidates": [{"content": {"parts": [{"text": "Très bon trimestre."}]}}],
            "usageMetadata": {"promptTokenCount": 40, "candidatesTokenCount": 8},
        }

        with patch("bulletin_ai.gateway.executor.httpx.AsyncClient") as MockClient:
            mock_client = AsyncMock()
            mock_client.request.return_value = make_httpx_response(200, payload)
            mock_client.__aenter__ = AsyncMock(return_value=mock_client)
            mock_client.__aexit__ = AsyncMock(return_value=False)
            MockClient.return_value = mock_client

            result = await orch.generate("prompt")

        assert result.text == "Très bon trimestre."
        assert result.usage.total_tokens == 48
        assert orch.executor.session_usage.session_tokens == 48
        assert orch.fallback_enabled is True

    def test_fallback_toggle(self):
        settings = Settings(_env_file=None, enable_api_fallback=False, rate_state_backend="memory")
        orch = FallbackOrchestrator.from_settings(settings)
        assert [c.model_id for c in orch.candidate_queue()] == ["gemini-2.5-flash"]
