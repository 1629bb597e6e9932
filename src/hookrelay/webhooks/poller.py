"""Background retry poller.

Runs a tick coroutine (normally ``WebhookDispatcher.process_retries``)
every ``interval`` seconds on an asyncio task until stopped. A failing
tick is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class RetryPoller:
    """Periodically retries due deliveries.

    Usage::

        poller = RetryPoller(dispatcher.process_retries, interval=5.0)
        poller.start()
        ...
        await poller.stop()
    """

    def __init__(self, tick: Callable[[], Awaitable[int]], interval: float = 5.0) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._tick = tick
        self._interval = interval
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0

    @property
    def is_running(self) -> bool:
        """Whether the poller task is alive."""
        return self._task is not None and not self._task.done()

    @property
    def ticks(self) -> int:
        """Number of completed ticks, successful or not."""
        return self._ticks

    def start(self) -> None:
        """Start polling. Calling start on a running poller is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run_loop(), name="hookrelay-retry-poller")
        logger.info("Retry poller started (interval %.1fs)", self._interval)

    async def stop(self) -> None:
        """Cancel the poller and wait for it to finish."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Retry poller stopped after %d ticks", self._ticks)

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                processed = await self._tick()
                if processed:
                    logger.debug("Retry poller processed %d deliveries", processed)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Retry poller tick failed")
            finally:
                self._ticks += 1


__all__ = ["RetryPoller"]
