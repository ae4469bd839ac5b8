"""Lifecycle notifications emitted around each generate() call."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

GENERATION_START = "generation-start"
GENERATION_END = "generation-end"
FALLBACK_OCCURRED = "fallback-occurred"


@dataclass
class GenerationStarted:
    context: str | None = None
    name_hint: str | None = None


@dataclass
class GenerationEnded:
    context: str | None = None
    name_hint: str | None = None


@dataclass
class FallbackOccurred:
    original_model: str
    used_model: str
    reason: str


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe hub.

    A failing handler is logged and skipped; it never breaks the generation
    that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers[event_name].append(handler)
        return lambda: self.unsubscribe(event_name, handler)

    def unsubscribe(self, event_name: str, handler: Handler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event_name: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event_name, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler for %s failed", event_name)

    def handler_count(self, event_name: str) -> int:
        return len(self._handlers.get(event_name, []))
