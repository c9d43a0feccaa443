"""Cooperative cancellation shared by every suspension point of a monitoring run."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import SessionStopped


T = TypeVar("T")


class StopSignal:
    """An asyncio.Event plus an optional probe for stops requested by another process.

    The probe (typically "is the persisted session status `stopped`?") is consulted
    at checkpoints and while sleeping, at most once per `probe_interval` seconds.
    """

    def __init__(
        self,
        is_stopped: Optional[Callable[[], bool]] = None,
        *,
        probe_interval: float = 1.0,
    ) -> None:
        self._event = asyncio.Event()
        self._is_stopped = is_stopped
        self._probe_interval = max(0.01, float(probe_interval))
        self.reason: str | None = None

    def set(self, reason: str | None = None) -> None:
        if reason and not self.reason:
            self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        if self._is_stopped is not None and self._is_stopped():
            self.set("stopped externally")
            return True
        return False

    def checkpoint(self) -> None:
        if self.is_set():
            raise SessionStopped(self.reason or "stopped")

    async def wait(self) -> None:
        while not self.is_set():
            try:
                await asyncio.wait_for(self._event.wait(), timeout=self._probe_interval)
            except asyncio.TimeoutError:
                continue

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, cancelling it and raising SessionStopped if a stop arrives first."""
        task = asyncio.ensure_future(awaitable)
        if self.is_set():
            task.cancel()
            raise SessionStopped(self.reason or "stopped")
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise SessionStopped(self.reason or "stopped")

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to `seconds`; return True when woken early by a stop."""
        deadline = time.monotonic() + max(0.0, float(seconds))
        while True:
            if self.is_set():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            try:
                await asyncio.wait_for(self._event.wait(), timeout=min(remaining, self._probe_interval))
            except asyncio.TimeoutError:
                continue
