"""Cooperative pause/cancel checkpoints and the repeated-failure ceiling."""

import asyncio
import logging
from collections import Counter


class TaskControl:
    """Pause, resume and cancel a running task at step boundaries.

    Nothing here interrupts a tool call in flight: the engine awaits
    ``checkpoint()`` between steps, which blocks while paused and reports
    whether the task may go on.
    """

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()
        self._cancelled = False
        self.cancel_reason = ""

    @property
    def paused(self) -> bool:
        return not self._running.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def pause(self) -> None:
        self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        self._cancelled = True
        self.cancel_reason = reason
        # Wake a paused task so it can observe the cancel
        self._running.set()

    async def checkpoint(self) -> bool:
        """Wait while paused.

        Returns:
            False once the task has been cancelled
        """
        await self._running.wait()
        return not self._cancelled


class FailureTracker:
    """Hard ceiling on repeated or consecutive blocking validation failures.

    Args:
        repeated_limit: Occurrences of one identical message that end the task
        consecutive_limit: Back-to-back failures that end the task
    """

    def __init__(self, repeated_limit: int = 2, consecutive_limit: int = 3) -> None:
        self.repeated_limit = repeated_limit
        self.consecutive_limit = consecutive_limit
        self.counts: Counter[str] = Counter()
        self.consecutive = 0
        self.logger = logging.getLogger(__name__)

    def record_failure(self, message: str) -> str | None:
        """Count a failure.

        Returns:
            The reason the ceiling was hit, or None while under it
        """
        self.counts[message] += 1
        self.consecutive += 1
        if self.counts[message] >= self.repeated_limit:
            reason = (
                f"The same validation error occurred {self.counts[message]} times: {message}"
            )
        elif self.consecutive >= self.consecutive_limit:
            reason = f"{self.consecutive} consecutive validation failures, last: {message}"
        else:
            return None
        self.logger.warning(reason)
        return reason

    def record_success(self) -> None:
        self.consecutive = 0

    def reset(self) -> None:
        self.counts.clear()
        self.consecutive = 0
