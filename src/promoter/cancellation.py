"""Invocation-scoped cancellation.

One token is shared by every workflow of a promotion run. Cancelling it stops
the waiting: poll sleeps end immediately and blocking host calls are no
longer awaited. Git operations writing into a working copy are waited for,
so the copy can be removed once they return. State already committed to the
remote (pushed branches, opened pull requests) is left as is.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from .errors import PromotionCancelledError, PromotionError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel every workflow sharing this token. Idempotent."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.warning("Promotion cancelled", extra={"reason": reason})

    def raise_if_cancelled(self) -> None:
        """Raise PromotionCancelledError if the token was cancelled."""
        if self._event.is_set():
            raise PromotionCancelledError(f"Promotion cancelled: {self._reason}")

    async def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early with an error on cancellation."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking call in the default executor, abandoning it on cancellation.

        The executor thread cannot be interrupted; on cancellation it is left
        to finish on its own and its result is discarded.
        """
        call, finished = await self._race(func, *args, **kwargs)
        if finished:
            return call.result()

        # Retrieve the abandoned call's exception, if any, to keep the loop quiet
        call.add_done_callback(lambda f: f.cancelled() or f.exception())
        raise PromotionCancelledError(f"Promotion cancelled: {self._reason}")

    async def run_to_completion(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking call that must not outlive its caller.

        Like run(), but on cancellation the call is awaited before
        PromotionCancelledError is raised. Used for git operations writing
        into a working copy that is deleted afterwards; such calls must be
        bounded on their own (git processes are killed after a timeout).
        """
        call, finished = await self._race(func, *args, **kwargs)
        if finished:
            return call.result()

        name = getattr(func, "__name__", repr(func))
        logger.info("Waiting for in-flight call after cancellation", extra={"call": name})
        try:
            await asyncio.shield(call)
        except PromotionError as e:
            logger.debug(
                "In-flight call failed after cancellation", extra={"call": name, "error": str(e)}
            )
        raise PromotionCancelledError(f"Promotion cancelled: {self._reason}")

    async def _race(
        self, func: Callable[..., T], *args: Any, **kwargs: Any
    ) -> tuple[asyncio.Future[T], bool]:
        """Start ``func`` and wait for it or for cancellation, whichever is first.

        Returns:
            Tuple of (call future, whether the call finished first).
        """
        self.raise_if_cancelled()
        loop = asyncio.get_running_loop()
        call = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
        waiter = asyncio.ensure_future(self._event.wait())

        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not waiter.done():
                waiter.cancel()

        return call, call in done
