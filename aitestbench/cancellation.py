"""Cooperative cancellation of in-flight runs."""

import asyncio
import logging
import threading
from collections.abc import Awaitable
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


class RunCanceledError(Exception):
    """Raised inside a run when its cancellation token fires."""

    def __init__(self, message: str = "Canceled") -> None:
        super().__init__(message)


@dataclass(kw_only=True)
class CancellationToken:
    """Signal shared between whoever cancels a run and the code executing it."""

    run_id: str
    _event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def guard[T](self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            RunCanceledError: If the token fired before the awaitable finished;
                the awaitable is cancelled.

        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCanceledError()

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()

        if task.done() and not task.cancelled():
            return task.result()
        raise RunCanceledError()


@dataclass
class CancellationRegistry:
    """Maps run ids to the tokens of runs currently executing."""

    _tokens: dict[str, CancellationToken] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def register(self, run_id: str) -> CancellationToken:
        """Create and track a token for a starting run."""
        token = CancellationToken(run_id=run_id)
        with self._lock:
            self._tokens[run_id] = token
        return token

    def cancel(self, run_id: str) -> bool:
        """Fire the token of ``run_id``.

        Returns:
            True if an in-flight run was found; False for unknown, finished or
            already cancelled runs.

        """
        with self._lock:
            token = self._tokens.pop(run_id, None)
        if token is None:
            return False
        log.info("Cancellation requested for run %s", run_id)
        token.cancel()
        return True

    def clear(self, run_id: str) -> None:
        """Forget the token of a finished run."""
        with self._lock:
            self._tokens.pop(run_id, None)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._tokens
