"""Cooperative cancellation for generation requests and batches.

A single :class:`CancellationToken` is threaded through every call of a
batch.  Checking it is the caller's job at each iteration or chunk
boundary; backends check it around their network calls.  Cancellation is
the only condition allowed to unwind the stack, as
:class:`GenerationCancelled`.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pageforge.core.models import BatchResult


class GenerationCancelled(Exception):
    """Raised when a user-initiated cancellation halts generation.

    Attributes:
        partial: Results gathered before the abort, attached by the batch
            scheduler.  ``None`` for single-page requests.
    """

    def __init__(self, message: str = "Generation cancelled", partial: BatchResult | None = None):
        super().__init__(message)
        self.partial = partial


class CancellationToken:
    """One-way cancellation flag shared by a request or batch."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event: asyncio.Event | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Mark the token cancelled and wake anything waiting on it."""
        self._cancelled = True
        if self._event is not None:
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise GenerationCancelled()

    async def wait(self) -> None:
        """Block until :meth:`cancel` is called."""
        # Created lazily so tokens can be built outside a running loop.
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` but wake early and raise if cancelled.

        Raises:
            GenerationCancelled: If the token is (or becomes) cancelled.
        """
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise GenerationCancelled()

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


async def cancellable_sleep(seconds: float, token: CancellationToken | None) -> None:
    """Sleep that honours an optional cancellation token."""
    if token is None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        return
    await token.sleep(seconds)
