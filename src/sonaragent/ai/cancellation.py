"""Cooperative cancellation shared between a session, its turns and tools."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, TypeVar

__all__ = ["CancelSignal", "CancelledByUser", "next_or_cancel"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class CancelledByUser(Exception):
    """Raised by :meth:`CancelSignal.raise_if_cancelled`."""


class CancelSignal:
    """One-shot cancellation flag that can also be awaited."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        LOGGER.debug("Cancellation requested%s", f": {reason}" if reason else "")

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledByUser(self._reason or "Operation cancelled")


_EXHAUSTED = object()


async def next_or_cancel(iterator: AsyncIterator[T], signal: CancelSignal | None) -> tuple[bool, T | None]:
    """Await the next item of ``iterator`` unless ``signal`` fires first.

    Returns ``(True, item)`` for an item and ``(False, None)`` when the
    iterator is exhausted. Raises :class:`CancelledByUser` when the signal
    fires first; the pending ``__anext__`` is cancelled in that case.
    """
    if signal is None:
        try:
            return True, await iterator.__anext__()
        except StopAsyncIteration:
            return False, None
    signal.raise_if_cancelled()

    next_task = asyncio.ensure_future(_anext(iterator))
    cancel_task = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        next_task.cancel()
        cancel_task.cancel()
        raise
    if next_task in done:
        cancel_task.cancel()
        result = next_task.result()
        if result is _EXHAUSTED:
            return False, None
        return True, result
    next_task.cancel()
    try:
        await next_task
    except asyncio.CancelledError:
        pass
    except Exception:
        LOGGER.debug("Stream raised while being abandoned", exc_info=True)
    raise CancelledByUser(signal.reason or "Operation cancelled")


async def _anext(iterator: AsyncIterator[T]) -> object:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED
