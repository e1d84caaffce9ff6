"""
Keyed one-shot task scheduling for the debounce coalescer.

``schedule(key, delay, callback)`` replaces any task already pending for
``key``; ``cancel(key)`` drops it. Callbacks are zero-argument coroutine
functions. Two backends are provided: plain asyncio timers and the
python-telegram-bot ``JobQueue`` used by the running bot.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from betslip_intake.utils.logging_config import get_logger

logger = get_logger(__name__)

TaskCallback = Callable[[], Awaitable[None]]


class TaskScheduler(Protocol):
    def schedule(self, key: str, delay_seconds: float, callback: TaskCallback) -> None:
        ...

    def cancel(self, key: str) -> bool:
        ...


async def _run_callback(key: str, callback: TaskCallback) -> None:
    try:
        await callback()
    except Exception:
        logger.exception("scheduled_task_failed", key=key)


class AsyncioScheduler:
    """Scheduler backed by ``loop.call_later`` on the running event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def schedule(self, key: str, delay_seconds: float, callback: TaskCallback) -> None:
        self.cancel(key)
        self._handles[key] = self._get_loop().call_later(
            max(0.0, delay_seconds), self._fire, key, callback
        )

    def _fire(self, key: str, callback: TaskCallback) -> None:
        self._handles.pop(key, None)
        task = self._get_loop().create_task(_run_callback(key, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self, key: str) -> bool:
        handle = self._handles.pop(key, None)
        if handle is None:
            return False
        handle.cancel()
        return True


class JobQueueScheduler:
    """Scheduler backed by python-telegram-bot's ``JobQueue.run_once``."""

    def __init__(self, job_queue: Any) -> None:
        self._job_queue = job_queue
        self._jobs: Dict[str, Any] = {}

    def schedule(self, key: str, delay_seconds: float, callback: TaskCallback) -> None:
        self.cancel(key)
        self._jobs[key] = self._job_queue.run_once(
            self._run_job,
            when=max(0.0, delay_seconds),
            data=(key, callback),
            name=f"debounce:{key}",
        )

    async def _run_job(self, context: Any) -> None:
        key, callback = context.job.data
        if self._jobs.get(key) is context.job:
            self._jobs.pop(key, None)
        await _run_callback(key, callback)

    def cancel(self, key: str) -> bool:
        job = self._jobs.pop(key, None)
        if job is None:
            return False
        job.schedule_removal()
        return True


__all__ = ["TaskScheduler", "TaskCallback", "AsyncioScheduler", "JobQueueScheduler"]
