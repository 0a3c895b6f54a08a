"""Scheduled side effects that run after the primary request has answered."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from annotation_service.logging import get_logger


class BackgroundRunner:
    """
    Runs named coroutines as asyncio tasks with bounded retries.

    Failures are logged and counted; they never propagate to the code that
    scheduled the work.
    """

    def __init__(
        self,
        max_attempts: int,
        retry_delay_seconds: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay_seconds
        self._sleep = sleep
        self._tasks: set[asyncio.Task[Any]] = set()
        self._completed = 0
        self._failed = 0
        self._logger = get_logger(__name__)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def stats(self) -> dict[str, int]:
        return {"pending": self.pending, "completed": self._completed, "failed": self._failed}

    def schedule(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        *,
        delay: float = 0.0,
        context: dict[str, Any] | None = None,
    ) -> asyncio.Task[Any]:
        """Start ``fn`` after ``delay`` seconds; returns the task for callers that await it."""
        task = asyncio.create_task(self._run(name, fn, delay, context or {}), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        name: str,
        fn: Callable[[], Awaitable[Any]],
        delay: float,
        context: dict[str, Any],
    ) -> Any:
        if delay > 0:
            await self._sleep(delay)

        for attempt in range(1, self._max_attempts + 1):
            try:
                result = await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._logger.warning(
                    "Background task attempt failed",
                    extra={
                        "task": name,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "error": str(exc),
                        "error_type": type(exc).__name__,
                        **context,
                    },
                )
                if attempt < self._max_attempts:
                    await self._sleep(self._retry_delay * attempt)
                continue

            self._completed += 1
            self._logger.info(
                "Background task completed",
                extra={"task": name, "attempt": attempt, **context},
            )
            return result

        self._failed += 1
        self._logger.error(
            "Background task gave up",
            extra={"task": name, "attempts": self._max_attempts, **context},
        )
        return None

    async def drain(self) -> None:
        """Wait until every scheduled task, including ones scheduled meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding work."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
