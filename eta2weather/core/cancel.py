from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import Cancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation handle threaded through every device call.

    A token created with a parent is cancelled when either it or the parent is.
    """

    def __init__(self, parent: Optional[CancelToken] = None) -> None:
        self._event = asyncio.Event()
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent.cancelled if self._parent else False

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise Cancelled("operation cancelled")

    def _events(self) -> list[asyncio.Event]:
        events = [self._event]
        if self._parent:
            events.extend(self._parent._events())
        return events

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await `aw`, failing fast with Cancelled as soon as the token fires."""
        if self.cancelled:
            if inspect.iscoroutine(aw):
                aw.close()
            raise Cancelled("operation cancelled")
        task = asyncio.ensure_future(aw)
        waiters = [asyncio.ensure_future(ev.wait()) for ev in self._events()]
        try:
            done, _ = await asyncio.wait({task, *waiters}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            for w in waiters:
                w.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            # the request lost the race; its own failure no longer matters
            logger.debug("Cancelled request finished with an error", exc_info=True)
        raise Cancelled("operation cancelled")


async def guarded(token: Optional[CancelToken], aw: Awaitable[T]) -> T:
    if token is None:
        return await aw
    return await token.guard(aw)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.1
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    async def run(self, fn: Callable[[], Awaitable[T]], what: str = "operation") -> T:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn()
            except Cancelled:
                raise
            except self.retry_on as e:
                last_error = e
                remaining = self.max_attempts - attempt
                if remaining > 0:
                    logger.info("Retrying %s... (%d attempts remaining): %s", what, remaining, e)
                    await asyncio.sleep(self.backoff_seconds * attempt)
        assert last_error is not None
        raise last_error
