"""Request Executor — one provider call for one candidate.

The executor owns everything between "this model, this prompt" and an
Outcome: building the request via the provider's adapter, racing the HTTP
call against the timeout and the caller's cancel token, classifying
failures, cleaning the text and accounting token usage.

It never raises for provider failures; every result is a Success or Failure.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any

import httpx

from bulletin_ai.core.metrics import AI_CALL_ATTEMPTS, AI_CALL_DURATION, AI_TOKENS
from bulletin_ai.gateway.cancellation import CancelToken
from bulletin_ai.gateway.errors import OperationCancelled, ProviderResponseError
from bulletin_ai.gateway.provider_adapters import ProviderAdapter, adapters_from_settings
from bulletin_ai.gateway.types import (
    Candidate,
    ErrorClassification,
    Failure,
    Outcome,
    RequestDescriptor,
    Success,
    UsageRecord,
)
from bulletin_ai.gateway.usage import SessionUsage

logger = logging.getLogger(__name__)

# Reasoning models (DeepSeek R1, Qwen3) wrap their chain of thought in <think> tags
_THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", re.DOTALL | re.IGNORECASE)


def strip_reasoning(text: str) -> str:
    return _THINK_BLOCK_RE.sub("", text or "").strip()


def _log_fields(candidate: Candidate, **fields) -> dict:
    return {"model_id": candidate.model_id, "provider_id": candidate.provider_id, **fields}


class RequestExecutor:
    """Performs exactly one call per execute().

    Usage:
        executor = RequestExecutor.from_settings(settings)
        outcome = await executor.execute(Candidate("gemini-2.5-flash", "google"), prompt)
        if outcome.ok:
            print(outcome.text)
    """

    def __init__(self, adapters: dict[str, ProviderAdapter], session_usage: SessionUsage | None = None):
        self.adapters = adapters
        self.session_usage = session_usage if session_usage is not None else SessionUsage()

    @classmethod
    def from_settings(cls, settings, session_usage: SessionUsage | None = None) -> RequestExecutor:
        return cls(adapters_from_settings(settings), session_usage=session_usage)

    async def execute(
        self,
        candidate: Candidate,
        prompt: str,
        *,
        timeout_ms: int | None = None,
        cancel_token: CancelToken | None = None,
    ) -> Outcome:
        adapter = self.adapters.get(candidate.provider_id)
        if adapter is None:
            return self._failed(
                candidate,
                Failure(ErrorClassification.UNKNOWN, f"No adapter configured for provider {candidate.provider_id}"),
                0,
            )

        if cancel_token is not None and cancel_token.cancelled:
            return self._failed(candidate, Failure(ErrorClassification.CANCELLED, "Operation cancelled by the caller."), 0)

        request = adapter.build_request(candidate.model_id, prompt)
        timeout_s = (timeout_ms or adapter.timeout_ms) / 1000
        logger.info(
            "Dispatching %s via %s (timeout %.0fs)",
            candidate.model_id,
            candidate.provider_id,
            timeout_s,
            extra=_log_fields(candidate),
        )

        start = time.monotonic()
        try:
            response = await self._dispatch(request, timeout_s, cancel_token)
        except OperationCancelled as e:
            return self._failed(candidate, Failure(ErrorClassification.CANCELLED, e.message), self._elapsed_ms(start))
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return self._failed(
                candidate,
                Failure(ErrorClassification.TIMEOUT, f"Request timed out after {timeout_s:g}s."),
                self._elapsed_ms(start),
            )
        except httpx.HTTPError as e:
            return self._failed(
                candidate,
                Failure(ErrorClassification.UNKNOWN, f"Network error: {e.__class__.__name__}: {e}"),
                self._elapsed_ms(start),
            )

        elapsed_ms = self._elapsed_ms(start)
        payload = self._decode(response)

        if not response.is_success:
            failure = Failure(
                classification=adapter.classify_error(response.status_code, payload),
                message=adapter.error_message(response.status_code, payload),
                status_code=response.status_code,
            )
            return self._failed(candidate, failure, elapsed_ms)

        try:
            parsed = adapter.parse_response(payload)
            text = strip_reasoning(parsed.text)
        except ProviderResponseError as e:
            return self._failed(candidate, Failure(ErrorClassification.UNKNOWN, e.message, response.status_code), elapsed_ms)
        except (TypeError, AttributeError, KeyError) as e:
            failure = Failure(
                ErrorClassification.UNKNOWN,
                f"Unexpected {candidate.provider_id} response shape: {e.__class__.__name__}: {e}",
                response.status_code,
            )
            return self._failed(candidate, failure, elapsed_ms)

        if not text:
            failure = Failure(
                ErrorClassification.EMPTY_RESPONSE,
                "Empty response: the model generated no text.",
                response.status_code,
            )
            return self._failed(candidate, failure, elapsed_ms)

        usage = UsageRecord(
            prompt_tokens=parsed.prompt_tokens,
            completion_tokens=parsed.completion_tokens,
            total_tokens=parsed.prompt_tokens + parsed.completion_tokens,
            generation_time_ms=elapsed_ms,
        )
        self.session_usage.record(candidate.model_id, usage.prompt_tokens, usage.completion_tokens)

        AI_CALL_ATTEMPTS.labels(provider=candidate.provider_id, model=candidate.model_id, outcome="success").inc()
        AI_CALL_DURATION.labels(provider=candidate.provider_id).observe(elapsed_ms / 1000)
        AI_TOKENS.labels(model=candidate.model_id, direction="input").inc(usage.prompt_tokens)
        AI_TOKENS.labels(model=candidate.model_id, direction="output").inc(usage.completion_tokens)

        logger.info(
            "%s answered in %d ms (%d tokens)",
            candidate.model_id,
            elapsed_ms,
            usage.total_tokens,
            extra=_log_fields(candidate),
        )
        return Success(text=text, usage=usage, generation_time_ms=elapsed_ms)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send(self, request: RequestDescriptor, timeout_s: float) -> httpx.Response:
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            return await client.request(
                request.method,
                request.url,
                json=request.body,
                headers=request.headers,
                params=request.params or None,
            )

    async def _dispatch(
        self,
        request: RequestDescriptor,
        timeout_s: float,
        cancel_token: CancelToken | None,
    ) -> httpx.Response:
        """Run the HTTP call under an overall deadline, aborting early on cancel."""
        call = asyncio.wait_for(self._send(request, timeout_s), timeout_s)
        if cancel_token is None:
            return await call

        sender = asyncio.ensure_future(call)
        waiter = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait({sender, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sender, waiter):
                if not task.done():
                    task.cancel()

        if sender in done:
            return sender.result()
        raise OperationCancelled(cancel_token.reason or "Operation cancelled by the caller.")

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)

    def _failed(self, candidate: Candidate, failure: Failure, elapsed_ms: int) -> Failure:
        AI_CALL_ATTEMPTS.labels(
            provider=candidate.provider_id,
            model=candidate.model_id,
            outcome=failure.classification.value,
        ).inc()
        if elapsed_ms:
            AI_CALL_DURATION.labels(provider=candidate.provider_id).observe(elapsed_ms / 1000)
        logger.warning(
            "%s failed after %d ms [%s]: %s",
            candidate.model_id,
            elapsed_ms,
            failure.classification.value,
            failure.message,
            extra=_log_fields(candidate, classification=failure.classification.value),
        )
        return failure


async def fetch_ollama_models(base_url: str, timeout: float = 3.0) -> list[str] | None:
    """Names of the models installed on an Ollama server, or None if it is unreachable."""
    url = f"{base_url.rstrip('/')}/api/tags"
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url)
    except httpx.HTTPError as e:
        logger.info("Ollama not reachable at %s: %s", base_url, e)
        return None

    if not resp.is_success:
        logger.info("Ollama at %s answered %d", base_url, resp.status_code)
        return None

    try:
        data = resp.json()
    except ValueError:
        logger.warning("Ollama at %s returned a non-JSON model list", base_url)
        return None
    return [m["name"] for m in data.get("models", []) if isinstance(m, dict) and m.get("name")]
