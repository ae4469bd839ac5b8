"""Cooperative cancellation shared by the rate-limit sleep and the HTTP call."""

from __future__ import annotations

import asyncio

from bulletin_ai.gateway.errors import OperationCancelled


class CancelToken:
    """Caller-owned flag that aborts a bulk generation.

    Usage:
        token = CancelToken()
        task = asyncio.create_task(orchestrator.generate(prompt, cancel_token=token))
        ...
        token.cancel()  # the generate() call raises GenerationError(cancelled)
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "Operation cancelled by the caller.")


async def cancellable_sleep(seconds: float, cancel_token: CancelToken | None = None, sleep=asyncio.sleep) -> None:
    """Sleep for `seconds`, raising OperationCancelled as soon as the token fires."""
    if cancel_token is None:
        await sleep(seconds)
        return

    cancel_token.raise_if_cancelled()
    sleeper = asyncio.ensure_future(sleep(seconds))
    waiter = asyncio.ensure_future(cancel_token.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
    cancel_token.raise_if_cancelled()
