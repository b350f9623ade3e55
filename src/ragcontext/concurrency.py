"""Request-scoped deadline and cancellation shared by all tasks of one request."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Iterable, TypeVar

from ragcontext.errors import RequestCancelled

T = TypeVar("T")


class RequestScope:
    """One deadline and one cancellation signal for every task of a request.

    Usage:
        scope = RequestScope(timeout_seconds=5.0)
        bundle = await assembler.assemble(user_id, text, scope=scope)
        # elsewhere: scope.cancel()
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds is not None else None
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def cancel(self) -> None:
        self._cancelled.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or ``None`` when unbounded."""

        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self) -> None:
        if self.cancelled:
            raise RequestCancelled("request was cancelled")
        if self.expired:
            raise RequestCancelled("request deadline exceeded")

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` bounded by the remaining deadline and the cancel signal.

        Raises ``asyncio.TimeoutError`` when the deadline passes first and
        ``RequestCancelled`` when the scope is cancelled first. In both cases
        the awaitable is cancelled.
        """

        task = asyncio.ensure_future(awaitable)
        cancel_waiter = asyncio.ensure_future(self.wait_cancelled())
        try:
            done, _ = await asyncio.wait(
                {task, cancel_waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            task.cancel()
            raise
        finally:
            cancel_waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self.cancelled:
            raise RequestCancelled("request was cancelled")
        raise asyncio.TimeoutError("request deadline exceeded")

    async def gather_partial(self, tasks: Iterable[asyncio.Task]) -> set[asyncio.Task]:
        """Wait for ``tasks`` until all finish, the deadline passes or the scope is cancelled.

        Unfinished tasks are cancelled; the finished ones are returned so callers
        keep whatever was gathered.
        """

        pending = set(tasks)
        done: set[asyncio.Task] = set()
        cancel_waiter = asyncio.ensure_future(self.wait_cancelled())
        try:
            while pending and not self.cancelled:
                remaining = self.remaining()
                if remaining is not None and remaining <= 0:
                    break
                finished, _ = await asyncio.wait(
                    pending | {cancel_waiter},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                finished.discard(cancel_waiter)
                if not finished:
                    break
                done |= finished
                pending -= finished
        finally:
            cancel_waiter.cancel()
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        return done
