"""Exceptions raised by the AI call scheduling layer."""

from __future__ import annotations

from bulletin_ai.gateway.types import AttemptLogEntry, ErrorClassification


class GatewayError(Exception):
    """Base class for every error raised by the gateway."""

    classification: ErrorClassification = ErrorClassification.UNKNOWN

    def __init__(self, message: str, classification: ErrorClassification | None = None):
        super().__init__(message)
        self.message = message
        if classification is not None:
            self.classification = classification


class OperationCancelled(GatewayError):
    """The caller's cancel token fired while we were waiting or dispatching."""

    classification = ErrorClassification.CANCELLED

    def __init__(self, message: str = "Operation cancelled by the caller."):
        super().__init__(message)


class ProviderResponseError(GatewayError):
    """A 2xx payload that does not have the shape the adapter expects."""

    def __init__(self, message: str, provider_id: str = ""):
        super().__init__(message, ErrorClassification.UNKNOWN)
        self.provider_id = provider_id


class GenerationError(GatewayError):
    """Single outcome of a failed generate() call.

    `attempts` keeps the raw per-candidate messages; the exception text is
    the user-facing summary.
    """

    def __init__(
        self,
        message: str,
        classification: ErrorClassification,
        attempts: list[AttemptLogEntry] | None = None,
        attempted_count: int = 0,
        skipped_count: int = 0,
        retry_after_ms: int | None = None,
    ):
        super().__init__(message, classification)
        self.attempts = attempts or []
        self.attempted_count = attempted_count
        self.skipped_count = skipped_count
        self.retry_after_ms = retry_after_ms

    @property
    def attempted_models(self) -> list[str]:
        return [a.candidate.model_id for a in self.attempts]


class NoCredentialsError(GenerationError):
    """No candidate model has a usable credential; nothing was dispatched."""

    def __init__(self, skipped_count: int = 0):
        super().__init__(
            "No AI provider is configured. Add an API key or enable Ollama to generate text.",
            ErrorClassification.AUTH,
            skipped_count=skipped_count,
        )
