"""Tests for invocation-scoped cancellation."""

import asyncio
import threading
import time

import pytest

from promoter.cancellation import CancellationToken
from promoter.errors import ErrorCategory, PromotionCancelledError, RepositoryUnavailableError


class TestCancellationToken:
    """Tests for CancellationToken."""

    @pytest.mark.asyncio
    async def test_run_returns_result(self) -> None:
        """Test that a blocking call's result is returned."""
        token = CancellationToken()
        assert await token.run(sum, [1, 2, 3]) == 6

    @pytest.mark.asyncio
    async def test_run_propagates_exception(self) -> None:
        """Test that a blocking call's exception is raised unchanged."""
        token = CancellationToken()

        def fail() -> None:
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await token.run(fail)

    @pytest.mark.asyncio
    async def test_run_after_cancel(self) -> None:
        """Test that nothing new starts once cancelled."""
        token = CancellationToken()
        token.cancel("stop")
        calls: list[int] = []

        with pytest.raises(PromotionCancelledError) as exc_info:
            await token.run(calls.append, 1)

        assert calls == []
        assert "stop" in str(exc_info.value)
        assert exc_info.value.category == ErrorCategory.TIMEOUT

    @pytest.mark.asyncio
    async def test_run_abandoned_on_cancel(self) -> None:
        """Test that a blocked call stops being awaited on cancellation."""
        token = CancellationToken()
        release = threading.Event()

        async def cancel_soon() -> None:
            await asyncio.sleep(0.05)
            token.cancel("shutdown")

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(PromotionCancelledError):
            await token.run(release.wait, 5)
        release.set()
        await canceller

    @pytest.mark.asyncio
    async def test_run_to_completion_waits_on_cancel(self) -> None:
        """Test that cancellation is raised only once the in-flight call returned."""
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        finished = threading.Event()

        def write_after_cancel() -> None:
            loop.call_soon_threadsafe(token.cancel, "shutdown")
            time.sleep(0.1)
            finished.set()

        with pytest.raises(PromotionCancelledError):
            await token.run_to_completion(write_after_cancel)

        assert finished.is_set()

    @pytest.mark.asyncio
    async def test_run_to_completion_failure_after_cancel(self) -> None:
        """Test that a call failing after cancellation still reports cancellation."""
        token = CancellationToken()
        loop = asyncio.get_running_loop()

        def fail_after_cancel() -> None:
            loop.call_soon_threadsafe(token.cancel, "shutdown")
            time.sleep(0.1)
            raise RepositoryUnavailableError("killed")

        with pytest.raises(PromotionCancelledError):
            await token.run_to_completion(fail_after_cancel)

    @pytest.mark.asyncio
    async def test_run_to_completion_returns_result(self) -> None:
        token = CancellationToken()
        assert await token.run_to_completion(sum, [1, 2]) == 3

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_cancel(self) -> None:
        """Test that a long sleep ends early with an error."""
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel, "timeout")
        started = loop.time()

        with pytest.raises(PromotionCancelledError):
            await token.sleep(30)

        assert loop.time() - started < 5

    @pytest.mark.asyncio
    async def test_sleep_completes(self) -> None:
        """Test that an uncancelled sleep returns normally."""
        token = CancellationToken()
        await token.sleep(0)
        assert token.cancelled is False

    def test_cancel_idempotent(self) -> None:
        """Test that the first reason is kept."""
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.cancelled is True
        assert token.reason == "first"
        with pytest.raises(PromotionCancelledError):
            token.raise_if_cancelled()
