"""Pause/resume/stop signalling shared between a job and its caller."""

import asyncio


class JobControl:
    """Cooperative control flags for a running job.

    Every operation is idempotent. ``stop()`` also releases anyone blocked
    in :meth:`wait_if_paused` so a paused job can be stopped.
    """

    def __init__(self) -> None:
        self._running = asyncio.Event()
        self._running.set()
        self._stopped = asyncio.Event()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set() and not self._stopped.is_set()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def pause(self) -> None:
        if not self._stopped.is_set():
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def stop(self) -> None:
        self._stopped.set()
        self._running.set()

    def reset(self) -> None:
        """Clear all flags before a new job starts."""
        self._stopped.clear()
        self._running.set()

    async def wait_if_paused(self) -> bool:
        """Block while paused.

        Returns:
            True if the job may continue, False if it was stopped.
        """
        await self._running.wait()
        return not self._stopped.is_set()
