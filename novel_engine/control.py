"""Cooperative cancellation and pause signals shared by a running session."""

import asyncio
from contextlib import suppress
from typing import Awaitable, TypeVar

T = TypeVar("T")


class ControlSignal(Exception):
    """Base for control-flow signals; never reported as a failure."""


class OperationCancelled(ControlSignal):
    """Raised at a checkpoint after cancellation was requested."""


class PauseRequested(ControlSignal):
    """Raised at a checkpoint after a pause was requested."""


class ExecutionControl:
    """Cancellation and pause state checked at every safe checkpoint.

    Pause is only observed through ``check()``; cancellation is also observed
    by ``guard()``, which aborts an in-flight call as soon as it fires.
    """

    def __init__(self):
        self._cancelled = asyncio.Event()
        self._pause_requested = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    def cancel(self) -> None:
        self._cancelled.set()

    def request_pause(self) -> None:
        self._pause_requested = True

    def clear_pause(self) -> None:
        self._pause_requested = False

    def check(self) -> None:
        """Raise the pending control signal, cancellation first."""
        if self._cancelled.is_set():
            raise OperationCancelled()
        if self._pause_requested:
            raise PauseRequested()

    def raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise OperationCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancellation fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if task in done and not task.cancelled():
            return task.result()
        raise OperationCancelled()
